"""Main entry point for Flume Water Exporter.

This module handles:
- Loading configuration from environment variables
- Scheduling periodic polls with APScheduler
- Coordinating collector, InfluxDB and Prometheus components
- Shutting the components down in order on exit
"""

import logging
import os
import sys
import time
from typing import Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger
from dotenv import load_dotenv

from flume_exporter.accumulator import MetricAccumulator
from flume_exporter.collector import FlumeWaterCollector
from flume_exporter.exporter import FlumeExporter
from flume_exporter.influxdb_exporter import InfluxDBExporter
from flume_exporter.models import DEFAULT_LOOKBACK_MINS, DEFAULT_UNITS

# Configure module logger
logger = logging.getLogger(__name__)

# Global instances (shared across poll runs)
collector: Optional[FlumeWaterCollector] = None
prometheus_exporter: Optional[FlumeExporter] = None
influxdb_exporter: Optional[InfluxDBExporter] = None

# Configuration from environment
config = {
    "client_id": "",
    "client_secret": "",
    "username": "",
    "password": "",
    "device_id": "",
    "lookback_mins": DEFAULT_LOOKBACK_MINS,
    "units": DEFAULT_UNITS,
    "timeout": 5.0,
    "poll_interval": 60,
    "exporter_port": 9121,
    # InfluxDB config
    "influxdb_url": "http://localhost:8086",
    "influxdb_token": "",
    "influxdb_org": "flume",
    "influxdb_bucket": "water",
}


def _env_number(name: str, key: str, default, cast):
    """Read a numeric variable into config, falling back to default if invalid."""
    try:
        config[key] = cast(os.getenv(name, str(default)))
    except ValueError:
        logger.warning(f"Invalid {name}, using default: {default}")
        config[key] = default


def load_config() -> bool:
    """Load configuration from environment variables.

    Required:
        FLUME_CLIENT_ID: API client ID
        FLUME_CLIENT_SECRET: API client secret
        FLUME_USERNAME: Flume account username
        FLUME_PASSWORD: Flume account password
        INFLUXDB_TOKEN: InfluxDB API token

    Optional:
        FLUME_DEVICE_ID: Device to collect (default: first device on the account)
        FLUME_LOOKBACK_MINS: Minutes re-queried on each poll (default: 5)
        FLUME_UNITS: GALLONS, LITERS, CUBIC_FEET or CUBIC_METERS (default: GALLONS)
        FLUME_TIMEOUT: Request timeout in seconds (default: 5)
        POLL_INTERVAL_SECONDS: Seconds between polls (default: 60)
        EXPORTER_PORT: Prometheus port (default: 9121)
        INFLUXDB_URL: InfluxDB server URL (default: http://localhost:8086)
        INFLUXDB_ORG: InfluxDB organization (default: flume)
        INFLUXDB_BUCKET: InfluxDB bucket (default: water)

    Returns:
        True if all required config loaded, False otherwise
    """
    config["client_id"] = os.getenv("FLUME_CLIENT_ID", "")
    config["client_secret"] = os.getenv("FLUME_CLIENT_SECRET", "")
    config["username"] = os.getenv("FLUME_USERNAME", "")
    config["password"] = os.getenv("FLUME_PASSWORD", "")
    config["device_id"] = os.getenv("FLUME_DEVICE_ID", "")
    config["units"] = os.getenv("FLUME_UNITS", DEFAULT_UNITS).upper()

    # Optional with defaults
    _env_number("FLUME_LOOKBACK_MINS", "lookback_mins", DEFAULT_LOOKBACK_MINS, int)
    _env_number("FLUME_TIMEOUT", "timeout", 5.0, float)
    _env_number("POLL_INTERVAL_SECONDS", "poll_interval", 60, int)
    _env_number("EXPORTER_PORT", "exporter_port", 9121, int)

    # InfluxDB configuration
    config["influxdb_url"] = os.getenv("INFLUXDB_URL", "http://localhost:8086")
    config["influxdb_token"] = os.getenv("INFLUXDB_TOKEN", "")
    config["influxdb_org"] = os.getenv("INFLUXDB_ORG", "flume")
    config["influxdb_bucket"] = os.getenv("INFLUXDB_BUCKET", "water")

    # Validate required config
    missing = []
    if not config["client_id"]:
        missing.append("FLUME_CLIENT_ID")
    if not config["client_secret"]:
        missing.append("FLUME_CLIENT_SECRET")
    if not config["username"]:
        missing.append("FLUME_USERNAME")
    if not config["password"]:
        missing.append("FLUME_PASSWORD")
    if not config["influxdb_token"]:
        missing.append("INFLUXDB_TOKEN")

    if missing:
        logger.error(f"Missing required environment variables: {', '.join(missing)}")
        return False

    logger.info(f"Configuration loaded: device_id={config['device_id'] or '(first device)'}, "
                f"lookback_mins={config['lookback_mins']}, "
                f"units={config['units']}, "
                f"poll_interval={config['poll_interval']}s, "
                f"influxdb_url={config['influxdb_url']}")
    return True


def run_poll() -> bool:
    """Execute one poll and export flow.

    This function:
    1. Polls the collector into a fresh accumulator
    2. Pushes the emitted points to InfluxDB
    3. Updates Prometheus operational metrics

    Errors reported by the collector do not fail the poll.

    Returns:
        True if the poll completed, False if it failed outright
    """
    start_time = time.time()
    accumulator = MetricAccumulator()

    try:
        emitted = collector.poll(accumulator)

        if influxdb_exporter:
            influxdb_exporter.write_points(accumulator.points)

        if prometheus_exporter:
            prometheus_exporter.update_metrics(accumulator.points)
            prometheus_exporter.set_scrape_success(True, time.time() - start_time, len(accumulator.errors))

        logger.info(f"Poll completed: {emitted} points, {len(accumulator.errors)} errors")
        return True

    except Exception as e:
        logger.error(f"Poll failed (unexpected error): {e}")
        if prometheus_exporter:
            prometheus_exporter.set_scrape_success(False, time.time() - start_time, len(accumulator.errors) + 1)
        return False


def shutdown() -> None:
    """Release the collector session and the InfluxDB connection."""
    if collector:
        collector.stop()
    if influxdb_exporter:
        influxdb_exporter.close()


def main() -> int:
    """Main entry point.

    1. Load .env file with python-dotenv
    2. Load and validate configuration
    3. Connect to InfluxDB
    4. Start Prometheus HTTP server (for operational metrics)
    5. Start scheduler with the interval poll job
    6. Run initial poll at startup
    7. Keep running (block on scheduler)

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    global collector, prometheus_exporter, influxdb_exporter

    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    logger.info("Flume Water Exporter starting")

    load_dotenv()

    if not load_config():
        logger.error("Configuration failed, exiting")
        return 1

    try:
        collector = FlumeWaterCollector(
            client_id=config["client_id"],
            client_secret=config["client_secret"],
            username=config["username"],
            password=config["password"],
            device_id=config["device_id"],
            lookback_mins=config["lookback_mins"],
            units=config["units"],
            timeout=config["timeout"],
        )
    except ValueError as e:
        logger.error(f"Invalid collector configuration: {e}")
        return 1

    influxdb_exporter = InfluxDBExporter(
        url=config["influxdb_url"],
        token=config["influxdb_token"],
        org=config["influxdb_org"],
        bucket=config["influxdb_bucket"],
    )

    if not influxdb_exporter.connect():
        logger.error("Failed to connect to InfluxDB, exiting")
        return 1

    prometheus_exporter = FlumeExporter(port=config["exporter_port"])
    prometheus_exporter.start()
    logger.info(f"Prometheus metrics available at http://localhost:{config['exporter_port']}/metrics")

    scheduler = BlockingScheduler()

    # One in-flight poll per collector
    scheduler.add_job(
        run_poll,
        trigger=IntervalTrigger(seconds=config["poll_interval"]),
        id="flume_poll",
        name=f"Flume poll every {config['poll_interval']}s",
        max_instances=1,
        coalesce=True,
    )
    logger.info(f"Scheduled poll every {config['poll_interval']}s")

    try:
        logger.info("Running initial poll at startup")
        run_poll()

        logger.info("Starting scheduler, press Ctrl+C to exit")
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Received interrupt, shutting down")
        if scheduler.running:
            scheduler.shutdown(wait=True)
    finally:
        shutdown()

    return 0


if __name__ == "__main__":
    sys.exit(main())
