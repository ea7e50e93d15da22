"""Structured logging setup using structlog"""

import logging
import sys
from typing import Any, Dict, Mapping

import structlog

from tusupload.config import settings

SENSITIVE_HEADER_KEYWORDS = ("authorization", "cookie", "token", "secret", "key")


def configure_third_party_loggers(log_level: int):
    """Keep third-party library loggers at ERROR"""
    error_level = logging.ERROR

    # Uvicorn
    logging.getLogger("uvicorn.access").setLevel(error_level)
    logging.getLogger("uvicorn.error").setLevel(error_level)

    # Aiohttp
    logging.getLogger("aiohttp").setLevel(error_level)
    logging.getLogger("aiohttp.client").setLevel(error_level)
    logging.getLogger("aiohttp.access").setLevel(error_level)

    # SQLAlchemy
    logging.getLogger("sqlalchemy").setLevel(error_level)
    logging.getLogger("sqlalchemy.engine").setLevel(error_level)
    logging.getLogger("sqlalchemy.pool").setLevel(error_level)

    logging.getLogger("asyncio").setLevel(error_level)


def configure_logging():
    """Configure structured logging with environment-aware settings"""
    log_level = getattr(logging, settings.effective_log_level.upper(), logging.ERROR)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    configure_third_party_loggers(log_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> Any:
    """Get a logger instance"""
    return structlog.get_logger(name)


def sanitize_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """
    Mask header values that carry credentials.

    Args:
        headers: Header mapping (e.g. configured custom headers)

    Returns:
        Copy of the mapping safe for logging
    """
    sanitized = {}
    for name, value in headers.items():
        lowered = name.lower()
        if any(keyword in lowered for keyword in SENSITIVE_HEADER_KEYWORDS):
            sanitized[name] = "[REDACTED]"
        else:
            sanitized[name] = value
    return sanitized


def log_tus_config(logger: Any, config: Any) -> None:
    """
    Log tus client configuration without exposing credentials.

    Args:
        logger: Logger instance
        config: Settings object with tus configuration
    """
    logger.info(
        "tus_config_loaded",
        upload_url=config.tus_upload_url,
        chunk_size=config.tus_chunk_size,
        custom_headers=sanitize_headers(config.tus_custom_headers),
        timeout_seconds=config.tus_timeout,
        retry_attempts=config.tus_retry_attempts,
        retry_base_delay=config.tus_retry_base_delay,
        retry_max_delay=config.tus_retry_max_delay,
        file_store_path=config.tus_file_store_path,
    )


# Configure logging on import
configure_logging()
