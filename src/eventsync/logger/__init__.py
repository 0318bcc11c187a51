"""
Structured logging for eventsync.

Records are built by structlog and handed to the standard library, so the
aio-pika, redis and uvicorn loggers end up on the same handler. Anything
logged while a delivery is being handled carries that message's id; HTTP
requests carry a correlation id.
"""

import contextvars
import logging
import logging.config
import sys
import uuid
from dataclasses import dataclass

import structlog
from pythonjsonlogger import jsonlogger

from ..config import EventSyncConfig, LogLevel
from ..exceptions import ConfigurationError

correlation_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)
message_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "message_id", default=None
)

LOG_FORMATS = ("json", "console")

# The AMQP client logs every frame and reconnect attempt at INFO.
CHATTY_LOGGERS = ("aio_pika", "aiormq")


def add_delivery_context(logger, method_name, event_dict):
    """Attach the current correlation id and message id, if any."""
    for key, var in (("correlation_id", correlation_id_var), ("message_id", message_id_var)):
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


class ServiceStamp:
    """Stamp the emitting service on every record."""

    def __init__(self, service_name: str, service_version: str = "1.0.0"):
        self.service_name = service_name
        self.service_version = service_version

    def __call__(self, logger, method_name, event_dict):
        event_dict["service"] = self.service_name
        event_dict["service_version"] = self.service_version
        return event_dict


@dataclass
class LogConfig:
    service_name: str
    service_version: str = "1.0.0"
    level: LogLevel = LogLevel.INFO
    format_type: str = "json"

    @classmethod
    def from_config(cls, config: EventSyncConfig) -> "LogConfig":
        return cls(
            service_name=config.service.name,
            service_version=config.service.version,
            level=config.logging.level,
            format_type=config.logging.format,
        )


def setup_logging(config: LogConfig) -> None:
    """
    Configure structlog and the root logger for one service process.

    JSON output renders exceptions as structured tracebacks; console output
    uses structlog's development renderer.
    """
    if config.format_type not in LOG_FORMATS:
        raise ConfigurationError(
            f"Unknown log format '{config.format_type}', expected one of {LOG_FORMATS}",
            error_code="INVALID_LOG_FORMAT",
        )
    as_json = config.format_type == "json"

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        ServiceStamp(config.service_name, config.service_version),
        add_delivery_context,
    ]
    if as_json:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    level = config.level.value
    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": jsonlogger.JsonFormatter,
                "format": "%(asctime)s %(name)s %(levelname)s %(message)s",
            },
            "console": {"format": "%(message)s"},
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": config.format_type,
                "stream": sys.stdout,
            },
        },
        "loggers": {
            "": {"handlers": ["stdout"], "level": level, "propagate": False},
            **{name: {"level": "WARNING"} for name in CHATTY_LOGGERS},
        },
    }
    try:
        logging.config.dictConfig(logging_config)
    except (ValueError, TypeError, AttributeError, ImportError) as e:
        raise ConfigurationError(f"Failed to configure logging: {e}")


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Set the correlation id for the current context, generating one if needed."""
    correlation_id = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(correlation_id)
    return correlation_id


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def bind_message_id(message_id: str | None) -> contextvars.Token:
    """Attach a message id to every record logged in the current context."""
    return message_id_var.set(message_id)


def reset_message_id(token: contextvars.Token) -> None:
    message_id_var.reset(token)


def clear_context() -> None:
    correlation_id_var.set(None)
    message_id_var.set(None)


__all__ = [
    "LogConfig",
    "ServiceStamp",
    "add_delivery_context",
    "bind_message_id",
    "clear_context",
    "get_correlation_id",
    "get_logger",
    "reset_message_id",
    "set_correlation_id",
    "setup_logging",
]
