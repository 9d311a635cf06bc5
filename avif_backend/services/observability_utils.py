# ╔══════════════════════════════════════════════════════════════════════╗
# ║ OBSERVABILITY UTILS : logging, audit trail and Prometheus metrics    ║
# ╠══════════════════════════════════════════════════════════════════════╣
# ║ Module Name:  avif_backend/services/observability_utils.py           ║
# ║ Layer:        Observability / shared by every pipeline service       ║
# ║ Test Suite:   avif_backend/tests/test_observability_utils.py         ║
# ╚══════════════════════════════════════════════════════════════════════╝
#  Counters live in a dedicated Prometheus registry (served on /metrics by
#  main.create_app) and are mirrored in memory so the CLI can print a
#  snapshot. Audit records are plain log lines on the "avif_backend.audit"
#  logger.

from __future__ import annotations

import logging
import sys
import threading
from typing import Any, Dict, Optional, Union

from prometheus_client import CollectorRegistry, Counter, generate_latest

_AUDIT_LOGGER_NAME = "avif_backend.audit"
_DEFAULT_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"

_METRICS: Dict[str, float] = {}
_METRICS_LOCK = threading.Lock()

PROM_REGISTRY = CollectorRegistry()
_PROM_EVENTS = Counter(
    "avif_backend_events_total", "Pipeline and HTTP events", ["event"], registry=PROM_REGISTRY
)


def get_logger(name: str) -> logging.Logger:
    """Return a module logger; never attaches handlers to non-root loggers twice."""
    logger = logging.getLogger(name)
    if not logger.handlers and not logging.getLogger().handlers:
        logger.addHandler(logging.NullHandler())
    return logger


def configure_logging(level: Optional[str] = None) -> None:
    level_str = (level or "INFO").upper()
    numeric = getattr(logging, level_str, logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=numeric, format=_DEFAULT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S", stream=sys.stdout)
    root.setLevel(numeric)
    logging.getLogger("avif_backend").setLevel(numeric)


def audit_log(action: str, target: str, status: str, details: Optional[Dict[str, Any]] = None) -> None:
    try:
        logging.getLogger(_AUDIT_LOGGER_NAME).info(
            "AUDIT action=%s target=%s status=%s details=%s", action, target, status, details or {}
        )
    except ValueError:
        # closed stream during interpreter/pytest shutdown
        pass


def metrics_inc(name: str, value: Union[int, float] = 1) -> None:
    with _METRICS_LOCK:
        _METRICS[name] = _METRICS.get(name, 0) + value
    # prometheus counters only go up
    if value > 0:
        _PROM_EVENTS.labels(event=name).inc(value)


def metrics_snapshot() -> Dict[str, float]:
    with _METRICS_LOCK:
        return dict(_METRICS)


def prometheus_text() -> bytes:
    """Exposition-format dump of ``PROM_REGISTRY``."""
    return generate_latest(PROM_REGISTRY)


def reset_metrics() -> None:
    """Clear the in-memory snapshot; Prometheus totals are monotonic and stay."""
    with _METRICS_LOCK:
        _METRICS.clear()


__all__ = [
    "PROM_REGISTRY",
    "get_logger",
    "configure_logging",
    "audit_log",
    "metrics_inc",
    "metrics_snapshot",
    "prometheus_text",
    "reset_metrics",
]
