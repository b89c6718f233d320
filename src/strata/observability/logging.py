"""Structured logging: JSON lines rendered by structlog's ``ProcessorFormatter``.

Components log through ``structlog.get_logger(__name__)`` with snake_case event names
and keyword fields. ``setup_structured_logging`` points structlog at the standard
library and installs a queue-backed sink. Records are rendered on the emitting thread,
so fields bound with ``correlation_scope`` are captured where the event happened; the
queue listener only writes finished lines.

Each line carries ``timestamp``, ``level``, ``logger`` and ``event``, the correlation
keys (``run_id``, ``migration_id``, ...) at the top level, every other keyword field
under ``fields`` and a formatted ``exception`` when one was attached. Secrets are
masked before rendering unless redaction is disabled.
"""

from __future__ import annotations

import atexit
import dataclasses
import logging
import logging.handlers
import math
import queue
import re
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

if TYPE_CHECKING:
    from strata.config.schema import LoggingSettings

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

MASK: Final[str] = "***REDACTED***"

_CORRELATION_KEYS: Final[frozenset[str]] = frozenset(
    {"run_id", "backend", "migration_id", "backup_name", "transaction_id"}
)
_SECRET_KEY_RE: Final[re.Pattern[str]] = re.compile(
    r"secret|token|passw|passphrase|credential|authorization", re.IGNORECASE
)
_SECRET_ASSIGNMENT_RE: Final[re.Pattern[str]] = re.compile(
    r"\b(?P<key>password|passwd|pwd|secret|token)\b(?P<sep>\s*[:=]\s*)[^\s,;]+",
    re.IGNORECASE,
)
_URL_USERINFO_RE: Final[re.Pattern[str]] = re.compile(
    r"\b(?P<prefix>[a-z][a-z0-9+.-]*://[^:/@\s]+):[^@\s]+@", re.IGNORECASE
)
_RESERVED_RECORD_ATTRS: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}

_active_lock = threading.Lock()
_active: StructuredLoggingHandle | None = None


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    run_id: str
    base_log_dir: Path | str = "logs"
    logger_name: str = "strata"
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = "strata.jsonl"
    log_to_stdout: bool = False
    redactor: LogRedactor | None = None
    configure_structlog: bool = True


def setup_logging(
    settings: LoggingSettings | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = "strata",
) -> logging.Logger:
    """Install JSON-lines logging from the ``[logging]`` settings; returns the logger.

    ``log_dir`` overrides ``settings.log_dir``. Component loggers are children of
    ``logger_name`` and inherit its sink.
    """

    config = LoggingConfig(run_id=run_id, logger_name=logger_name)
    if settings is not None:
        config = dataclasses.replace(
            config,
            base_log_dir=settings.log_dir,
            level=settings.level,
            log_to_stdout=settings.log_to_stdout,
            redactor=None if settings.redact_secrets else _keep,
        )
    if log_dir is not None:
        config = dataclasses.replace(config, base_log_dir=log_dir)
    return setup_structured_logging(config).logger


class _JsonLineShaper:
    """Final structlog processor: arrange an event into the JSON-lines record shape."""

    def __init__(self, run_id: str, redactor: LogRedactor) -> None:
        self._run_id = run_id
        self._redactor = redactor

    def __call__(self, logger: object, method_name: str, event_dict: Any) -> dict[str, Any]:
        del logger, method_name
        record: logging.LogRecord = event_dict.pop("_record")
        from_structlog = event_dict.pop("_from_structlog", False)
        if not from_structlog:
            event_dict.update(_record_extras(record))
        timestamp = event_dict.pop("timestamp", None)
        message = event_dict.pop("event", "")
        exception = event_dict.pop("exception", None)

        correlation = {"run_id": self._run_id}
        bound = get_correlation_context()
        for key in [k for k, v in event_dict.items() if _is_correlation(k, v, bound)]:
            correlation[key] = event_dict.pop(key).strip()
        for key, value in bound.items():
            correlation.setdefault(key, value)

        shaped: dict[str, Any] = {
            "timestamp": timestamp,
            "level": record.levelname,
            "logger": record.name,
            "event": self._text(message),
            **correlation,
        }
        if event_dict:
            shaped["fields"] = self._redactor(_jsonable(event_dict))
        if exception:
            shaped["exception"] = self._text(exception)
        return shaped

    def _text(self, value: object) -> str:
        redacted = self._redactor(_jsonable(value))
        return redacted if isinstance(redacted, str) else str(redacted)


class _JsonQueueHandler(logging.handlers.QueueHandler):
    """Renders on the caller's thread and drops records instead of blocking when full."""

    def __init__(self, log_queue: queue.Queue[Any], formatter: logging.Formatter) -> None:
        super().__init__(log_queue)
        self.setFormatter(formatter)
        self.dropped = 0
        self._dropped_lock = threading.Lock()

    def prepare(self, record: logging.LogRecord) -> Any:
        prepared = super().prepare(record)
        prepared.stack_info = None
        return prepared

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self.dropped += 1


class StructuredLoggingHandle:
    """An installed sink; ``shutdown`` drains the queue and closes the files."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        run_id: str,
        log_path: Path,
        queue_handler: _JsonQueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
        owns_structlog: bool,
    ) -> None:
        self.logger = logger
        self.run_id = run_id
        self.log_path = log_path
        self._queue_handler = queue_handler
        self._listener = listener
        self._sinks = sinks
        self._owns_structlog = owns_structlog
        self._lock = threading.Lock()
        self._closed = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        """Wait until queued lines are written or ``timeout_seconds`` pass."""
        pending: queue.Queue[Any] = self._queue_handler.queue  # type: ignore[assignment]
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while pending.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.005)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self.flush(timeout_seconds=timeout_seconds)
            self.logger.removeHandler(self._queue_handler)
            self._listener.stop()
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            if self._owns_structlog:
                structlog.reset_defaults()


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Install the JSON-lines sink described by ``config``, replacing any active one."""
    global _active

    run_id = _require_text(config.run_id, "run_id")
    logger_name = _require_text(config.logger_name, "logger_name")
    filename = _require_text(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must not include path separators")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _parse_level(config.level)

    shutdown_logging()

    log_path = Path(config.base_log_dir) / run_id / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
            _JsonLineShaper(run_id, config.redactor or default_log_redactor),
            structlog.processors.JSONRenderer(
                sort_keys=True, separators=(",", ":"), ensure_ascii=False
            ),
        ],
    )
    line_format = logging.Formatter("%(message)s")
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setFormatter(line_format)

    logger = logging.getLogger(logger_name)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False

    queue_handler = _JsonQueueHandler(queue.Queue(maxsize=config.queue_size), formatter)
    listener = logging.handlers.QueueListener(queue_handler.queue, *sinks)
    listener.start()
    logger.addHandler(queue_handler)

    if config.configure_structlog:
        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.StackInfoRenderer(),
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=False,
        )

    handle = StructuredLoggingHandle(
        logger=logger,
        run_id=run_id,
        log_path=log_path,
        queue_handler=queue_handler,
        listener=listener,
        sinks=tuple(sinks),
        owns_structlog=config.configure_structlog,
    )
    with _active_lock:
        _active = handle
    atexit.unregister(shutdown_logging)
    atexit.register(shutdown_logging)
    return handle


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _active_lock:
        return _active


def flush_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    target = handle or get_active_logging_handle()
    if target is not None:
        target.flush(timeout_seconds=timeout_seconds)


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    """Close ``handle`` (default: the active one); a no-op when nothing is installed."""
    global _active

    target = handle or get_active_logging_handle()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    with _active_lock:
        if _active is target:
            _active = None


def get_correlation_context() -> dict[str, str]:
    """Correlation fields bound in the current context."""
    return {
        key: value
        for key, value in structlog.contextvars.get_contextvars().items()
        if isinstance(value, str)
    }


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for the block; ``None`` hides an outer binding."""
    outer = structlog.contextvars.get_contextvars()
    hidden = [key for key, value in fields.items() if value is None]
    tokens = structlog.contextvars.bind_contextvars(
        **{
            key: _require_text(value, f"correlation field {key!r}")
            for key, value in fields.items()
            if value is not None
        }
    )
    structlog.contextvars.unbind_contextvars(*hidden)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
        restored = {key: outer[key] for key in hidden if key in outer}
        if restored:
            structlog.contextvars.bind_contextvars(**restored)


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask secret-named keys, ``password=...`` style text and URL credentials.

    Keys ending in ``_env`` name an environment variable, not a secret, and are kept.
    """
    if isinstance(value, dict):
        return {
            key: MASK if _is_secret_key(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, str):
        masked = _SECRET_ASSIGNMENT_RE.sub(rf"\g<key>\g<sep>{MASK}", value)
        return _URL_USERINFO_RE.sub(rf"\g<prefix>:{MASK}@", masked)
    return value


def _keep(value: JSONValue) -> JSONValue:
    return value


def _is_secret_key(key: str) -> bool:
    return not key.lower().endswith("_env") and _SECRET_KEY_RE.search(key) is not None


def _is_correlation(key: str, value: object, bound: Mapping[str, str]) -> bool:
    return (key in _CORRELATION_KEYS or key in bound) and isinstance(value, str) and bool(
        value.strip()
    )


def _record_extras(record: logging.LogRecord) -> dict[str, object]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RESERVED_RECORD_ATTRS and not key.startswith("_")
    }


def _jsonable(value: object) -> JSONValue:
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else repr(value)
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted((_jsonable(item) for item in value), key=repr)
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _require_text(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value.strip()


def _parse_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    try:
        return logging.getLevelNamesMapping()[level.strip().upper()]
    except KeyError:
        raise ValueError(f"unsupported logging level {level!r}") from None


__all__ = [
    "MASK",
    "JSONScalar",
    "JSONValue",
    "LogRedactor",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "correlation_scope",
    "default_log_redactor",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
