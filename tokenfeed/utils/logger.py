import json
import logging
import logging.handlers
import os
import platform
import queue
import random
import re
import sys
import threading
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Deque, Dict, Optional, Tuple

from .config_loader import ConfigLoader

__all__ = [
    "get_logger",
    "update_log_level",
    "set_correlation_id",
    "get_correlation_id",
    "log_metric",
    "correlation_decorator",
    "shutdown_logger",
]

METRICS_LOGGER_NAME = "METRICS"
DEFAULT_CONFIG_PATH = "config/settings.json"


def _utc_timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


class SecretSanitizer:
    PATTERNS = {
        "bearer": re.compile(r"(Bearer\s+)([A-Za-z0-9\-._~+/]+=*)", re.IGNORECASE),
        "api_key": re.compile(r"((?:api[_-]?key|x-api-key|authorization)[\"']?\s*[:=]\s*[\"']?)([^\s\"',&]+)", re.IGNORECASE),
        "uuid_key": re.compile(r"\b([0-9a-f]{8})-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{8}([0-9a-f]{4})\b", re.IGNORECASE),
    }

    @classmethod
    def sanitize(cls, text: str) -> str:
        text = cls.PATTERNS["bearer"].sub(lambda m: m.group(1) + "****", text)
        text = cls.PATTERNS["api_key"].sub(lambda m: m.group(1) + "****", text)
        text = cls.PATTERNS["uuid_key"].sub(lambda m: m.group(1) + "-****-" + m.group(2), text)
        return text


class FileFormatter(logging.Formatter):
    TEXT_FORMAT = "[%(asctime)s.%(msecs)03d] [%(levelname)s] [%(name)s] [%(correlation_id)s] %(message)s"

    def __init__(self, use_json: bool = False, max_message_length: int = 10000):
        super().__init__(self.TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
        self.use_json = use_json
        self.max_message_length = max_message_length
        self.hostname = platform.node()

    def format(self, record: logging.LogRecord) -> str:
        correlation_id = getattr(record, "correlation_id", None) or str(uuid.uuid4())[:8]
        record.correlation_id = correlation_id

        message = SecretSanitizer.sanitize(record.getMessage())
        if len(message) > self.max_message_length:
            message = message[: self.max_message_length] + "...[truncated]"

        if not self.use_json:
            # format() recomputes record.message from msg/args, so render a copy
            clone = logging.makeLogRecord(record.__dict__)
            clone.msg, clone.args = message, None
            return super().format(clone)

        log_data = {
            "timestamp": _utc_timestamp(),
            "level": record.levelname,
            "module": record.name,
            "message": message,
            "correlation_id": correlation_id,
            "thread_id": threading.get_ident(),
            "process_id": os.getpid(),
            "host": self.hostname,
        }
        if hasattr(record, "custom_fields"):
            log_data.update(record.custom_fields)
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False, default=str)


class ColorFormatter(FileFormatter):
    COLOR_MAP = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__(use_json=False)
        self.use_color = use_color and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)
        if self.use_color and record.levelno in self.COLOR_MAP:
            return f"{self.COLOR_MAP[record.levelno]}{formatted}{self.RESET}"
        return formatted


class MetricsFilter(logging.Filter):
    def __init__(self, metrics_only: bool):
        super().__init__()
        self.metrics_only = metrics_only

    def filter(self, record: logging.LogRecord) -> bool:
        is_metric = record.name == METRICS_LOGGER_NAME
        return is_metric if self.metrics_only else not is_metric


class RateLimiter:
    """Drops a message once it repeated ``max_messages`` times within ``window_seconds``."""

    def __init__(self, max_messages: int = 10, window_seconds: float = 5):
        self.max_messages = max_messages
        self.window_seconds = window_seconds
        self._seen: Dict[Tuple[str, str], Deque[float]] = {}
        self._lock = threading.Lock()

    def should_log(self, message: str, level: str) -> bool:
        now = time.monotonic()
        with self._lock:
            stamps = self._seen.setdefault((level, message), deque())
            while stamps and now - stamps[0] >= self.window_seconds:
                stamps.popleft()
            if len(stamps) >= self.max_messages:
                return False
            stamps.append(now)
            return True


class _FeedQueueHandler(logging.handlers.QueueHandler):
    def __init__(self, log_queue, rate_limiter: RateLimiter, sampling_rates: Dict[str, float]):
        super().__init__(log_queue)
        self.rate_limiter = rate_limiter
        self.sampling_rates = sampling_rates

    def emit(self, record: logging.LogRecord) -> None:
        sampling_rate = self.sampling_rates.get(record.levelname, 1.0)
        if sampling_rate < 1.0 and random.random() > sampling_rate:
            return

        if record.name != METRICS_LOGGER_NAME and not self.rate_limiter.should_log(
            record.getMessage(), record.levelname
        ):
            return

        if not getattr(record, "correlation_id", None):
            record.correlation_id = Logger.current_correlation_id() or "-"
        super().emit(record)


class Logger:
    _instance_lock = threading.Lock()
    _instance: Optional["Logger"] = None
    _correlation_store = threading.local()

    def __new__(cls):
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if getattr(self, "_initialized", False):
            return
        self._config_path = os.environ.get("TOKENFEED_CONFIG", DEFAULT_CONFIG_PATH)
        self._config: Dict[str, Any] = {}
        self._loggers: Dict[str, logging.Logger] = {}
        self._logger_creation_lock = threading.Lock()
        self._log_queue: "queue.Queue[logging.LogRecord]" = queue.Queue(maxsize=10000)
        self._handlers: list = []
        self._listener: Optional[logging.handlers.QueueListener] = None
        self._reload_config()
        self._setup_logging_infrastructure()
        self._initialized = True

    def _reload_config(self) -> None:
        config = ConfigLoader.load_config(self._config_path) or {}
        log_config = dict(config.get("logging", {}))
        env_level = os.environ.get("TOKENFEED_LOG_LEVEL")
        if env_level:
            log_config["level"] = env_level
        self._config = {"logging": log_config}

    def _get_log_config(self) -> Dict[str, Any]:
        return self._config.get("logging", {})

    def _level(self) -> int:
        level_name = str(self._get_log_config().get("level", "INFO")).upper()
        return logging._nameToLevel.get(level_name, logging.INFO)

    def _rotating_handler(self, filename: str, formatter: logging.Formatter, level: int) -> logging.Handler:
        log_config = self._get_log_config()
        handler = logging.handlers.RotatingFileHandler(
            filename=filename,
            maxBytes=log_config.get("max_bytes", 5 * 1024 * 1024),
            backupCount=log_config.get("backup_count", 10),
            encoding="utf-8",
        )
        handler.setFormatter(formatter)
        handler.setLevel(level)
        return handler

    def _setup_logging_infrastructure(self) -> None:
        log_config = self._get_log_config()
        log_dir = log_config.get("log_dir", "logs/")
        os.makedirs(log_dir, exist_ok=True)

        max_message_length = log_config.get("max_message_length", 10000)
        self._sampling_rates = log_config.get("sampling_rates", {
            "DEBUG": 0.1,
            "INFO": 1.0,
            "WARNING": 1.0,
            "ERROR": 1.0,
            "CRITICAL": 1.0,
        })
        self._rate_limiter = RateLimiter(
            max_messages=log_config.get("rate_limit_messages", 10),
            window_seconds=log_config.get("rate_limit_window", 5),
        )

        file_handler = self._rotating_handler(
            os.path.join(log_dir, log_config.get("log_file", "tokenfeed.log")),
            FileFormatter(use_json=log_config.get("use_json", False), max_message_length=max_message_length),
            logging.DEBUG,
        )
        file_handler.addFilter(MetricsFilter(metrics_only=False))

        error_handler = self._rotating_handler(
            os.path.join(log_dir, "error.log"), FileFormatter(use_json=False), logging.ERROR
        )

        metrics_handler = self._rotating_handler(
            os.path.join(log_dir, "metrics.log"), FileFormatter(use_json=True), logging.INFO
        )
        metrics_handler.addFilter(MetricsFilter(metrics_only=True))

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(ColorFormatter(log_config.get("use_color", True)))
        console_handler.addFilter(MetricsFilter(metrics_only=False))

        self._handlers = [file_handler, error_handler, metrics_handler, console_handler]
        self._listener = logging.handlers.QueueListener(
            self._log_queue, *self._handlers, respect_handler_level=True
        )
        self._listener.start()

    def get_logger(self, module_name: str) -> logging.Logger:
        with self._logger_creation_lock:
            if module_name in self._loggers:
                return self._loggers[module_name]

            logger = logging.getLogger(module_name)
            logger.setLevel(self._level())
            logger.propagate = False
            if not any(isinstance(h, _FeedQueueHandler) for h in logger.handlers):
                logger.addHandler(_FeedQueueHandler(self._log_queue, self._rate_limiter, self._sampling_rates))

            self._loggers[module_name] = logger
            return logger

    def update_log_level(self, new_level: str) -> None:
        new_level = new_level.upper()
        if new_level not in logging._nameToLevel:
            new_level = "INFO"
        with self._logger_creation_lock:
            for logger in self._loggers.values():
                logger.setLevel(logging._nameToLevel[new_level])

    @classmethod
    def current_correlation_id(cls) -> Optional[str]:
        return getattr(cls._correlation_store, "correlation_id", None)

    def set_correlation_id(self, correlation_id: Optional[str]) -> None:
        self._correlation_store.correlation_id = correlation_id

    def log_metric(self, name: str, value: Any, tags: Optional[Dict[str, Any]] = None) -> None:
        metric_data = {
            "metric_name": name,
            "value": value,
            "tags": tags or {},
            "timestamp": _utc_timestamp(),
        }
        metrics_logger = self.get_logger(METRICS_LOGGER_NAME)
        metrics_logger.info(
            json.dumps(metric_data, default=str),
            extra={"custom_fields": metric_data},
        )

    def shutdown(self) -> None:
        if self._listener:
            try:
                self._listener.stop()
            except Exception:
                pass
            self._listener = None
        for handler in self._handlers:
            handler.close()
        self._handlers = []


_manager_instance: Optional[Logger] = None
_manager_lock = threading.Lock()


def _manager(create: bool = True) -> Optional[Logger]:
    global _manager_instance
    with _manager_lock:
        if _manager_instance is None and create:
            _manager_instance = Logger()
        return _manager_instance


def get_logger(module_name: str) -> logging.Logger:
    return _manager().get_logger(module_name)


def update_log_level(new_level: str) -> None:
    manager = _manager(create=False)
    if manager is not None:
        manager.update_log_level(new_level)


def set_correlation_id(correlation_id: Optional[str]) -> None:
    Logger._correlation_store.correlation_id = correlation_id


def get_correlation_id() -> Optional[str]:
    return Logger.current_correlation_id()


def log_metric(name: str, value: Any, tags: Optional[Dict[str, Any]] = None) -> None:
    manager = _manager(create=False)
    if manager is not None:
        manager.log_metric(name, value, tags)


def shutdown_logger() -> None:
    """Drain the queue and close every handler. The next get_logger() starts a fresh manager."""
    global _manager_instance
    with _manager_lock:
        manager, _manager_instance = _manager_instance, None
    if manager is not None:
        manager.shutdown()
        Logger._instance = None


def correlation_decorator(correlation_id: Optional[str] = None):
    """Run the wrapped call under a correlation id and log how long it took.

    An id already active on the thread is inherited, so nested service calls
    share one id. The previous id is restored on exit.
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            outer = get_correlation_id()
            cid = correlation_id or outer or uuid.uuid4().hex[:8]
            set_correlation_id(cid)
            logger = get_logger(func.__module__)
            extra = {"correlation_id": cid}
            started = time.perf_counter()
            try:
                logger.debug(f"-> {func.__qualname__}", extra=extra)
                result = func(*args, **kwargs)
            except Exception as e:
                elapsed_ms = (time.perf_counter() - started) * 1000
                logger.error(f"{func.__qualname__} raised {type(e).__name__} after {elapsed_ms:.1f}ms: {e}", extra=extra)
                raise
            else:
                elapsed_ms = (time.perf_counter() - started) * 1000
                logger.debug(f"<- {func.__qualname__} ({elapsed_ms:.1f}ms)", extra=extra)
                return result
            finally:
                set_correlation_id(outer)
        return wrapper
    return decorator
