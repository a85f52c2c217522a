import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime
import os
import threading


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "session-core"
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

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

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add service context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.utcnow().isoformat()

    context = structlog.contextvars.get_contextvars()

    trace_id = context.get("trace_id")
    if trace_id:
        event_dict.setdefault("trace_id", trace_id)

    session_id = context.get("session_id")
    if session_id:
        event_dict.setdefault("session_id", session_id)

    return event_dict


class CoreLogger:
    """Event logger for turn, tool and context activity"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_turn_transition(
        self,
        session_id: str,
        from_status: str,
        to_status: str,
        state_summary: Optional[Dict[str, Any]] = None
    ):
        """Log turn state machine transitions"""

        self.logger.info(
            "turn_transition",
            session_id=session_id,
            from_status=from_status,
            to_status=to_status,
            state_summary=state_summary or {}
        )

    def log_tool_execution(
        self,
        tool_name: str,
        session_id: Optional[str],
        input_data: Dict[str, Any],
        duration_ms: Optional[float] = None,
        success: bool = True,
        replayed: bool = False,
        error: Optional[str] = None
    ):
        """Log tool execution events"""

        self.logger.info(
            "tool_execution",
            tool_name=tool_name,
            session_id=session_id,
            input_keys=sorted(input_data.keys()),
            duration_ms=duration_ms,
            success=success,
            replayed=replayed,
            error=error
        )

    def log_context_update(
        self,
        session_id: str,
        context_type: str,
        action: str,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log context updates"""

        self.logger.info(
            "context_update",
            session_id=session_id,
            context_type=context_type,
            action=action,
            details=details or {}
        )

    def log_budget_decision(
        self,
        ledger_key: str,
        feature: str,
        model: str,
        allowed: bool,
        reason: Optional[str] = None
    ):
        self.logger.info(
            "budget_decision",
            ledger_key=ledger_key,
            feature=feature,
            model=model,
            allowed=allowed,
            reason=reason
        )


# Global logger instance
core_logger = CoreLogger("session_core")


class MetricsCollector:
    """Collect and export metrics"""

    def __init__(self):
        self.metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        """Record operation latency"""

        key = f"latency.{operation}"
        with self._lock:
            if key not in self.metrics:
                self.metrics[key] = {
                    "count": 0,
                    "sum": 0,
                    "min": float('inf'),
                    "max": 0
                }

            self.metrics[key]["count"] += 1
            self.metrics[key]["sum"] += duration_ms
            self.metrics[key]["min"] = min(self.metrics[key]["min"], duration_ms)
            self.metrics[key]["max"] = max(self.metrics[key]["max"], duration_ms)

        core_logger.logger.debug(
            "metric",
            metric_type="latency",
            operation=operation,
            duration_ms=duration_ms,
            tags=tags or {}
        )

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """Increment a counter metric"""

        with self._lock:
            self.metrics[name] = self.metrics.get(name, 0) + value

        core_logger.logger.debug(
            "metric",
            metric_type="counter",
            name=name,
            value=value,
            tags=tags or {}
        )

    def set_gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        """Set a gauge metric"""

        with self._lock:
            self.metrics[name] = value

        core_logger.logger.debug(
            "metric",
            metric_type="gauge",
            name=name,
            value=value,
            tags=tags or {}
        )

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of all metrics"""

        summary = {}
        with self._lock:
            items = list(self.metrics.items())

        for key, value in items:
            if isinstance(value, dict) and "count" in value:
                summary[key] = {
                    "count": value["count"],
                    "avg": value["sum"] / value["count"] if value["count"] > 0 else 0,
                    "min": value["min"] if value["min"] != float('inf') else 0,
                    "max": value["max"]
                }
            else:
                summary[key] = value

        return summary


# Global metrics collector
metrics = MetricsCollector()
