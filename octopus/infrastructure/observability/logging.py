import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime, timezone

from octopus import __version__


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "octopus",
    environment: str = "development"
) -> None:
    """Setup structured logging configuration"""

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    # merge_contextvars first so run_id bound by the orchestrator reaches every entry
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]
    renderer = structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=processors + [renderer],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(service=service_name, environment=environment, version=__version__)


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Stamp entries that were logged outside a bound run context"""

    event_dict.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    run_id = structlog.contextvars.get_contextvars().get("run_id")
    if run_id:
        event_dict.setdefault("run_id", run_id)
    return event_dict


class RunLogger:
    """Specialized logger for run orchestration"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_run_transition(self, run_id: str, from_status: str, to_status: str, details: Optional[Dict[str, Any]] = None):
        self.logger.info(
            "run_transition",
            run_id=run_id,
            from_status=from_status,
            to_status=to_status,
            details=details or {}
        )

    def log_step_attempt(
        self,
        run_id: str,
        step_id: str,
        tool_name: str,
        attempt: int,
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        """One tool invocation; failures go out at warning level"""

        emit = self.logger.info if success else self.logger.warning
        emit(
            "step_attempt",
            run_id=run_id,
            step_id=step_id,
            tool_name=tool_name,
            attempt=attempt,
            duration_ms=round(duration_ms, 2) if duration_ms is not None else None,
            success=success,
            error=error
        )

    def log_tool_resolution(self, tool_name: str, kind: str, reason: Optional[str] = None):
        self.logger.info("tool_resolution", tool_name=tool_name, kind=kind, reason=reason)


run_logger = RunLogger("octopus")


class _Latency:
    __slots__ = ("count", "total", "low", "high")

    def __init__(self):
        self.count = 0
        self.total = 0.0
        self.low: Optional[float] = None
        self.high = 0.0

    def add(self, duration_ms: float):
        self.count += 1
        self.total += duration_ms
        self.low = duration_ms if self.low is None else min(self.low, duration_ms)
        self.high = max(self.high, duration_ms)

    def summary(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "avg": self.total / self.count if self.count else 0,
            "min": self.low or 0,
            "max": self.high,
        }


class MetricsCollector:
    """In-process counters and latencies, echoed to the debug log"""

    def __init__(self):
        self.counters: Dict[str, int] = {}
        self.latencies: Dict[str, _Latency] = {}

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        self.latencies.setdefault(operation, _Latency()).add(duration_ms)
        run_logger.logger.debug("metric", metric_type="latency", operation=operation, duration_ms=duration_ms, tags=tags or {})

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        self.counters[name] = self.counters.get(name, 0) + value
        run_logger.logger.debug("metric", metric_type="counter", name=name, value=value, tags=tags or {})

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Counters by name, latencies under 'latency.<operation>'"""

        summary: Dict[str, Any] = dict(self.counters)
        for operation, stats in self.latencies.items():
            summary[f"latency.{operation}"] = stats.summary()
        return summary


metrics = MetricsCollector()
