from warmhost.observability.logger import logger
from warmhost.observability.metrics import Datum, MetricsPublisher, StartupTimings

__all__ = ["Datum", "MetricsPublisher", "StartupTimings", "logger"]
