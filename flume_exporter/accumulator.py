"""Per-poll metric and error accumulation.

The collector hands every emitted point and every recoverable error to an
accumulator instead of raising, so one bad reading never stops a poll.
"""

import logging
from typing import List

from flume_exporter.models import MetricPoint

# Configure module logger
logger = logging.getLogger(__name__)


class Accumulator:
    """Sink interface the collector emits into."""

    def add_metric(self, point: MetricPoint) -> None:
        raise NotImplementedError

    def add_error(self, err: Exception) -> None:
        raise NotImplementedError


class MetricAccumulator(Accumulator):
    """Collects the points and errors of one poll cycle in memory.

    Attributes:
        points: Emitted metric points, in emission order
        errors: Reported errors, in report order
    """

    def __init__(self):
        self.points: List[MetricPoint] = []
        self.errors: List[Exception] = []

    def add_metric(self, point: MetricPoint) -> None:
        self.points.append(point)

    def add_error(self, err: Exception) -> None:
        logger.error(f"{type(err).__name__}: {err}")
        self.errors.append(err)

    def clear(self) -> None:
        self.points.clear()
        self.errors.clear()
