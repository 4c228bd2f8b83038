"""Flume Water Exporter package.

A Docker-based exporter that polls the Flume water-usage API, flattens
minute-level readings into tagged points, and writes them to InfluxDB with
their reading timestamps.
"""

__version__ = "0.1.0"
