import logging
from typing import Any

import config

logger = logging.getLogger(__name__)


_PROM_METRICS: dict[tuple[str, str], Any] = {}
_STATSD_CLIENT: Any = None
_STATSD_INIT_DONE = False

_METRIC_NAME_MAP = {
    "registration.submitted": "registration_submitted_total",
    "registration.duplicate": "registration_duplicate_total",
    "registration.quality_rejected": "registration_quality_rejected_total",
    "registration.extraction_failed": "registration_extraction_failed_total",
    "registration.needs_review": "registration_needs_review_total",
    "registration.ineligible": "registration_ineligible_total",
}


def _sanitize_metric_name(name: str) -> str:
    return _METRIC_NAME_MAP.get(name, name.replace(".", "_"))


def _backend() -> str:
    return (config.REGISTRATION_METRICS_BACKEND or "noop").strip().lower()


def _init_statsd() -> Any:
    global _STATSD_CLIENT, _STATSD_INIT_DONE
    if _STATSD_INIT_DONE:
        return _STATSD_CLIENT

    _STATSD_INIT_DONE = True
    try:
        from statsd import StatsClient

        _STATSD_CLIENT = StatsClient(host=config.STATSD_HOST, port=config.STATSD_PORT, prefix="trainee_bot")
    except Exception as exc:
        logger.warning("[METRICS] statsd init failed: %s", exc)
        _STATSD_CLIENT = None
    return _STATSD_CLIENT


def _prometheus_metric(kind: str, name: str) -> Any:
    prom_name = _sanitize_metric_name(name)
    metric = _PROM_METRICS.get((kind, prom_name))
    if metric is None:
        import prometheus_client

        factory = prometheus_client.Counter if kind == "inc" else prometheus_client.Gauge
        metric = factory(prom_name, f"{factory.__name__} for {name}")
        _PROM_METRICS[(kind, prom_name)] = metric
    return metric


def _emit(kind: str, name: str, value: float) -> None:
    """Send one observation to the configured backend; ``kind`` is ``inc`` or ``gauge``."""
    if not config.REGISTRATION_LOG_METRICS_ENABLED:
        return

    backend = _backend()
    if backend == "prometheus":
        try:
            metric = _prometheus_metric(kind, name)
            if kind == "inc":
                metric.inc(value)
            else:
                metric.set(value)
        except Exception as exc:
            logger.warning("[METRICS] prometheus %s failed for %s: %s", kind, name, exc)
        return

    if backend == "statsd":
        client = _init_statsd()
        if client is None:
            return
        try:
            if kind == "inc":
                client.incr(name, value)
            else:
                client.gauge(name, value)
        except Exception as exc:
            logger.warning("[METRICS] statsd %s failed for %s: %s", kind, name, exc)


def inc(name: str, value: int = 1) -> None:
    _emit("inc", name, value)


def gauge(name: str, value: float) -> None:
    _emit("gauge", name, value)
