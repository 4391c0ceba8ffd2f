import logging
from enum import Enum

import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from structlog.typing import Processor


class LogFormats(str, Enum):
    JSON = "json"
    CONSOLE = "console"


class LogSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="DEVCLUSTER_")

    log_format: LogFormats = LogFormats.CONSOLE
    log_level: str = "INFO"


def setup_logging(log_settings: LogSettings | None = None) -> None:
    settings = log_settings or LogSettings()
    log_level = settings.log_level

    log_renderer: Processor
    if settings.log_format == LogFormats.CONSOLE:
        log_renderer = structlog.dev.ConsoleRenderer()
    else:
        log_renderer = structlog.processors.JSONRenderer()

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.stdlib.ExtraAdder(),
        structlog.processors.CallsiteParameterAdder(
            [
                structlog.processors.CallsiteParameter.PATHNAME,
                structlog.processors.CallsiteParameter.FUNC_NAME,
                structlog.processors.CallsiteParameter.LINENO,
            ],
        ),
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.log_format == LogFormats.JSON:
        processors.append(structlog.processors.format_exc_info)

    structlog.configure(
        processors=processors  # type: ignore
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=processors,  # type: ignore
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            log_renderer,
        ],
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    root_logger = logging.getLogger()
    # Repeated setup must not stack handlers
    for existing in list(root_logger.handlers):
        if isinstance(existing.formatter, structlog.stdlib.ProcessorFormatter):
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level.upper())

    # The docker client logs every request at DEBUG
    for _log in ["aiodocker", "httpx", "httpcore"]:
        logging.getLogger(_log).setLevel(max(logging.INFO, root_logger.level))
