"""
Named counter / gauge emission for the discovery pipeline and the canary.

Components record datapoints on a MetricsRecorder during an invocation; the
recorder is flushed once at the end of the invocation (success or failure)
to the configured backend:

    log         one structured log line per datapoint (default)
    cloudwatch  CloudWatch ``put_metric_data`` through boto3

The recorder keeps every datapoint in memory so tests and run reports can
inspect what was emitted.
"""

import asyncio
import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from core.clock import utc_now

logger = logging.getLogger(__name__)


class MetricUnit(str, enum.Enum):
    """Units understood by the metrics backends"""
    COUNT = "Count"
    MILLISECONDS = "Milliseconds"
    SECONDS = "Seconds"
    BYTES = "Bytes"


@dataclass
class Datapoint:
    name: str
    value: float
    unit: MetricUnit
    timestamp: datetime = field(default_factory=utc_now)


class MetricsBackend(ABC):
    """Destination for flushed datapoints"""

    @abstractmethod
    async def publish(
        self,
        namespace: str,
        datapoints: List[Datapoint],
        dimensions: Dict[str, str]
    ) -> None:
        pass


class LoggingMetricsBackend(MetricsBackend):
    """Writes datapoints to the log, one line each"""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    async def publish(self, namespace, datapoints, dimensions):
        for point in datapoints:
            logger.log(
                self.level,
                f"metric {namespace}/{point.name}={point.value:g} {point.unit.value}",
                extra={"metric": {
                    "namespace": namespace,
                    "name": point.name,
                    "value": point.value,
                    "unit": point.unit.value,
                    "dimensions": dimensions,
                }}
            )


class CloudWatchMetricsBackend(MetricsBackend):
    """
    Publishes datapoints with CloudWatch ``put_metric_data``.

    The boto3 client is created lazily so importing this module never needs
    AWS credentials.
    """

    # put_metric_data accepts at most 1000 datapoints per call
    MAX_BATCH = 1000

    def __init__(self, client=None, region_name: Optional[str] = None):
        self._client = client
        self.region_name = region_name

    @property
    def client(self):
        if self._client is None:
            import boto3
            self._client = boto3.client("cloudwatch", region_name=self.region_name)
        return self._client

    async def publish(self, namespace, datapoints, dimensions):
        metric_data = [
            {
                "MetricName": point.name,
                "Value": point.value,
                "Unit": point.unit.value,
                "Timestamp": point.timestamp,
                "Dimensions": [{"Name": k, "Value": v} for k, v in dimensions.items()],
            }
            for point in datapoints
        ]

        for i in range(0, len(metric_data), self.MAX_BATCH):
            chunk = metric_data[i:i + self.MAX_BATCH]
            await asyncio.to_thread(
                self.client.put_metric_data,
                Namespace=namespace,
                MetricData=chunk
            )


class MetricsRecorder:
    """
    Collects datapoints for one invocation.

    Usage:
        metrics = MetricsRecorder("RegistryDiscovery")
        metrics.put("ChangeCount", 12, MetricUnit.COUNT)
        await metrics.flush()
    """

    def __init__(
        self,
        namespace: str,
        backend: Optional[MetricsBackend] = None,
        dimensions: Optional[Dict[str, str]] = None
    ):
        self.namespace = namespace
        self.backend = backend or LoggingMetricsBackend()
        self.dimensions = dimensions or {}
        self._pending: List[Datapoint] = []
        self._history: List[Datapoint] = []

    def put(self, name: str, value: float, unit: MetricUnit = MetricUnit.COUNT) -> None:
        point = Datapoint(name=name, value=float(value), unit=unit)
        self._pending.append(point)
        self._history.append(point)

    def values(self, name: str) -> List[float]:
        """All values recorded for ``name`` during this invocation"""
        return [p.value for p in self._history if p.name == name]

    def total(self, name: str) -> float:
        return sum(self.values(name))

    async def flush(self) -> None:
        """Send pending datapoints to the backend. Failures are logged, not raised."""
        if not self._pending:
            return

        pending, self._pending = self._pending, []
        try:
            await self.backend.publish(self.namespace, pending, self.dimensions)
        except Exception as e:
            logger.error(
                f"Failed to publish {len(pending)} metrics to {self.namespace}: {str(e)}"
            )


def build_metrics_backend(name: str, region_name: Optional[str] = None) -> MetricsBackend:
    """Resolve the METRICS_BACKEND setting"""
    if name == "cloudwatch":
        return CloudWatchMetricsBackend(region_name=region_name)
    if name == "log":
        return LoggingMetricsBackend()
    raise ValueError(f"Unknown metrics backend: {name}")
