"""Logging and observability for the orchestration engine.

Three pieces live here:

* ``setup_logging`` wires the ``feature_orchestrator`` logger tree to stderr
  (stdout belongs to the MCP stdio transport) and optionally to a JSON-lines
  file.
* ``performance_monitor`` times engine operations. It keeps running totals
  per operation and a short window of recent samples, so a long-lived server
  does not accumulate one entry per call.
* ``observability_hooks`` dispatches workflow events (phase transitions,
  artifact writes, gate decisions, halts) to registered callbacks.
"""

from __future__ import annotations

import json
import sys
import threading
import time
import logging as std_logging
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Union

LOGGER_NAME = "feature_orchestrator"

CONSOLE_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"
CONSOLE_DATEFMT = "%Y-%m-%d %H:%M:%S"

MAX_SAMPLES = 100

_perf_logger = std_logging.getLogger(f"{LOGGER_NAME}.performance")
_ops_logger = std_logging.getLogger(f"{LOGGER_NAME}.operations")
_event_logger = std_logging.getLogger(f"{LOGGER_NAME}.observability")
_error_logger = std_logging.getLogger(f"{LOGGER_NAME}.errors")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def setup_logging(log_level: Union[str, int] = std_logging.INFO, log_file: Optional[Path] = None) -> None:
    """Route engine logs to stderr and, when ``log_file`` is given, a JSON-lines file.

    Calling it again replaces the handlers installed by the previous call.
    """
    logger = std_logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = std_logging.StreamHandler(sys.stderr)
    console.setLevel(log_level)
    console.setFormatter(std_logging.Formatter(CONSOLE_FORMAT, datefmt=CONSOLE_DATEFMT))
    logger.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = std_logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(std_logging.DEBUG)
        file_handler.setFormatter(JsonFormatter())
        logger.addHandler(file_handler)

    logger.debug(f"Logging configured at {std_logging.getLevelName(logger.level)}"
                 + (f", JSON log at {log_file}" if log_file else ""))


class JsonFormatter(std_logging.Formatter):
    """One JSON object per record.

    Structured context passed as ``extra={"extra_fields": {...}}`` is merged
    into the top level of the object.
    """

    FIELDS = (
        ("level", "levelname"),
        ("logger", "name"),
        ("module", "module"),
        ("function", "funcName"),
        ("line", "lineno"),
    )

    def format(self, record: std_logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
        }
        for key, attr in self.FIELDS:
            entry[key] = getattr(record, attr)
        entry["message"] = record.getMessage()
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(getattr(record, "extra_fields", None) or {})
        return json.dumps(entry, default=str)


@dataclass(slots=True)
class OperationStats:
    """Running totals for one metric."""

    count: int = 0
    errors: int = 0
    total: float = 0.0
    max: float = 0.0
    last: float = 0.0

    def add(self, value: float, failed: bool = False) -> None:
        self.count += 1
        self.total += value
        self.last = value
        if value > self.max:
            self.max = value
        if failed:
            self.errors += 1

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "errors": self.errors,
            "total": self.total,
            "mean": self.mean,
            "max": self.max,
            "last": self.last,
        }


class PerformanceMonitor:
    """Timing for engine operations such as ``update_state`` or ``save_artifact``.

    Totals are kept for the life of the process; raw samples are capped at
    ``max_samples`` per metric, oldest dropped first.
    """

    def __init__(self, max_samples: int = MAX_SAMPLES):
        self.max_samples = max_samples
        self._lock = threading.Lock()
        self._stats: Dict[str, OperationStats] = {}
        self._samples: Dict[str, Deque[Dict[str, Any]]] = {}

    def record_metric(self, name: str, value: float, tags: Optional[Dict[str, str]] = None) -> None:
        """Add one numeric sample for ``name``.

        A sample tagged ``status=error`` also counts towards ``errors``.
        """
        sample = {"timestamp": _now(), "value": value, "tags": dict(tags or {})}
        with self._lock:
            stats = self._stats.get(name)
            if stats is None:
                stats = self._stats[name] = OperationStats()
                self._samples[name] = deque(maxlen=self.max_samples)
            stats.add(float(value), failed=sample["tags"].get("status") == "error")
            self._samples[name].append(sample)

        _perf_logger.debug(f"Metric recorded: {name}={value}", extra={"extra_fields": {"metric": name, **sample}})

    def get_metrics(self, name: Optional[str] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Recent samples, oldest first, for one metric or all of them."""
        with self._lock:
            if name:
                return {name: list(self._samples.get(name, ()))}
            return {key: list(samples) for key, samples in self._samples.items()}

    def summary(self, name: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        """Aggregates per metric: count, errors, total, mean, max and last value."""
        with self._lock:
            if name:
                stats = self._stats.get(name)
                return {name: stats.to_dict()} if stats else {}
            return {key: stats.to_dict() for key, stats in self._stats.items()}

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._samples.clear()


performance_monitor = PerformanceMonitor()


def log_performance(operation_name: str):
    """Record the wall time of each call as ``<operation_name>_duration``.

    Failed calls are tagged with ``status=error`` and the exception type;
    the exception itself propagates unchanged.
    """
    metric = f"{operation_name}_duration"

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            tags = {"status": "success"}
            started = time.perf_counter()
            try:
                return func(*args, **kwargs)
            except Exception as e:
                tags = {"status": "error", "error_type": type(e).__name__}
                raise
            finally:
                performance_monitor.record_metric(metric, time.perf_counter() - started, tags)

        return wrapper
    return decorator


@contextmanager
def log_operation(operation_name: str, **extra_fields) -> Iterator[Dict[str, Any]]:
    """Log the outcome of a block of engine work.

    Yields the structured fields that will be logged; the block may add to
    them (for example a byte count) before it finishes.
    """
    fields: Dict[str, Any] = {"operation": operation_name, **extra_fields}
    _ops_logger.debug(f"{operation_name} started", extra={"extra_fields": {**fields, "status": "started"}})
    started = time.perf_counter()
    try:
        yield fields
    except Exception as e:
        fields.update(
            status="failed",
            duration=time.perf_counter() - started,
            error_type=type(e).__name__,
            error_message=str(e),
        )
        _ops_logger.error(f"{operation_name} failed after {fields['duration']:.3f}s: {e}", extra={"extra_fields": fields})
        raise
    fields.update(status="completed", duration=time.perf_counter() - started)
    _ops_logger.info(f"{operation_name} completed in {fields['duration']:.3f}s", extra={"extra_fields": fields})


class ObservabilityHooks:
    """Callbacks keyed by workflow event name.

    Callbacks receive the event fields as keyword arguments. A callback that
    raises is logged and skipped; it never fails the engine operation that
    emitted the event.
    """

    def __init__(self):
        self.hooks: Dict[str, List[Callable[..., None]]] = {}

    def register_hook(self, event_type: str, callback: Callable[..., None]) -> None:
        self.hooks.setdefault(event_type, []).append(callback)

    def clear_hooks(self, event_type: Optional[str] = None) -> None:
        if event_type is None:
            self.hooks.clear()
        else:
            self.hooks.pop(event_type, None)

    def trigger_hooks(self, event_type: str, **data) -> None:
        # copy: a callback may register further hooks
        for hook in tuple(self.hooks.get(event_type, ())):
            try:
                hook(**data)
            except Exception:
                _event_logger.exception(f"Hook {getattr(hook, '__name__', hook)!s} failed for {event_type}")

    def log_workflow_event(self, event_type: str, feature_id: Optional[str] = None, **data) -> None:
        """Log ``event_type`` with its fields, then run its callbacks.

        Callbacks get ``feature_id``, ``timestamp`` and ``data``; the event
        name is only the dispatch key.
        """
        payload = {"feature_id": feature_id, "timestamp": _now(), **data}
        _event_logger.info(
            f"Workflow event: {event_type}" + (f" ({feature_id})" if feature_id else ""),
            extra={"extra_fields": {"event_type": event_type, **payload}},
        )
        self.trigger_hooks(event_type, **payload)


observability_hooks = ObservabilityHooks()


def log_phase_transition(feature_id: str, from_phase: str, to_phase: str, **extra_fields):
    """Log a phase change of the state machine."""
    observability_hooks.log_workflow_event(
        "phase_transition",
        feature_id=feature_id,
        from_phase=from_phase,
        to_phase=to_phase,
        **extra_fields
    )


def log_artifact_event(event_type: str, artifact_name: str, feature_id: str, **extra_fields):
    observability_hooks.log_workflow_event(
        f"artifact_{event_type.lower()}",
        feature_id=feature_id,
        artifact_name=artifact_name,
        **extra_fields
    )


def log_gate_decision(feature_id: Optional[str], status: str, missing: List[str], **extra_fields):
    """Log a coverage gate decision."""
    observability_hooks.log_workflow_event(
        "coverage_gate_evaluated",
        feature_id=feature_id,
        status=status,
        missing=list(missing),
        **extra_fields
    )


def log_error_with_context(error: Exception, context: Dict[str, Any], **extra_fields):
    """Log ``error`` at ERROR level with the operation context that produced it."""
    _error_logger.error(
        f"Error in {context.get('operation', 'unknown operation')}: {error}",
        extra={"extra_fields": {
            "timestamp": _now(),
            "error_type": type(error).__name__,
            "error_message": str(error),
            "context": context,
            **extra_fields,
        }},
    )
