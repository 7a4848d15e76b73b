"""
Prometheus metrics for the FHIR search engine.

``setup_search_metrics`` registers the counters and histograms the search
components update: providers created, pages served, page latency, entities
dropped by translation and resources pulled in by includes. Components take
the manager as an optional collaborator and skip recording without one.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Summary
from prometheus_client import start_http_server as start_prometheus_server

from fhir_search.utils.logging import get_logger

logger = get_logger(__name__)


class MetricType(str, Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"
    SUMMARY = "summary"


_METRIC_CLASSES = {
    MetricType.COUNTER: Counter,
    MetricType.GAUGE: Gauge,
    MetricType.HISTOGRAM: Histogram,
    MetricType.SUMMARY: Summary,
}


@dataclass
class MetricDefinition:
    """Name (without namespace), help text, type and label names of a metric."""

    name: str
    description: str
    type: MetricType
    labels: List[str] = field(default_factory=list)
    buckets: Optional[List[float]] = None


SEARCH_METRICS = [
    MetricDefinition("searches_total", "Bundle providers created by SearchQuery", MetricType.COUNTER, ["resource_type"]),
    MetricDefinition("pages_total", "Pages served by bundle providers", MetricType.COUNTER, ["resource_type"]),
    MetricDefinition(
        "translation_failures_total",
        "Entities excluded from a page because translation failed",
        MetricType.COUNTER,
        ["resource_type"],
    ),
    MetricDefinition(
        "included_resources_total",
        "Resources attached to pages through _include or _revinclude",
        MetricType.COUNTER,
        ["resource_type", "direction"],
    ),
    MetricDefinition(
        "page_fetch_duration_seconds",
        "Time spent materializing and translating one page",
        MetricType.HISTOGRAM,
        ["resource_type"],
        buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
    ),
]


class MetricsManager:
    """
    Holds metrics by short name under a common namespace.

    A manager owns a private ``CollectorRegistry`` unless one is passed in,
    so tests and embedded engines do not collide on metric names.
    """

    def __init__(self, namespace: str = "fhir_search", registry: Optional[CollectorRegistry] = None):
        self.namespace = namespace
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._definitions: Dict[str, MetricDefinition] = {}

    def _full_name(self, name: str) -> str:
        return f"{self.namespace}_{name}"

    def register_metric(self, definition: MetricDefinition) -> None:
        """Create the collector for ``definition``; a second registration of a name is ignored."""
        if definition.name in self._metrics:
            logger.debug("Metric %s already registered", self._full_name(definition.name))
            return

        kwargs: Dict[str, Any] = {"registry": self.registry}
        if definition.type == MetricType.HISTOGRAM and definition.buckets:
            kwargs["buckets"] = definition.buckets

        metric_class = _METRIC_CLASSES[definition.type]
        self._metrics[definition.name] = metric_class(
            self._full_name(definition.name), definition.description, definition.labels, **kwargs
        )
        self._definitions[definition.name] = definition

    def get_metric(self, name: str) -> Any:
        try:
            return self._metrics[name]
        except KeyError:
            raise ValueError(f"Metric '{self._full_name(name)}' not registered") from None

    def _child(self, name: str, labels: Optional[Dict[str, str]]) -> Any:
        metric = self.get_metric(name)
        return metric.labels(**labels) if labels else metric

    def increment_counter(self, name: str, value: float = 1, labels: Optional[Dict[str, str]] = None) -> None:
        self._child(name, labels).inc(value)

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        self._child(name, labels).set(value)

    def observe_histogram(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        self._child(name, labels).observe(value)

    def get_sample_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """
        Current value of a sample in this manager's registry.

        Args:
            name: Sample name without namespace, e.g. ``pages_total`` or
                ``page_fetch_duration_seconds_count``
            labels: Label values

        Returns:
            The value, or None if nothing was recorded for these labels
        """
        return self.registry.get_sample_value(self._full_name(name), labels or {})

    def start_metrics_server(self, port: int = 9090) -> None:
        start_prometheus_server(port, registry=self.registry)
        logger.info("Serving %s metrics on port %d", self.namespace, port)


def setup_search_metrics(
    manager: Optional[MetricsManager] = None, metrics_port: Optional[int] = None
) -> MetricsManager:
    """
    Register the search metrics on ``manager`` (a new one if omitted).

    Args:
        manager: Manager to register with
        metrics_port: Start a scrape endpoint on this port when given

    Returns:
        The manager holding the search metrics
    """
    manager = manager or MetricsManager()
    for definition in SEARCH_METRICS:
        manager.register_metric(definition)

    if metrics_port:
        manager.start_metrics_server(metrics_port)

    return manager
