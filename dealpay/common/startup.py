"""Startup configuration dump with credentials masked."""

from pydantic_settings import BaseSettings

from dealpay.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def redacted_settings(config: BaseSettings) -> dict:
    """Settings as a dict, with credential-like fields masked."""

    view = {}
    for name, value in config.model_dump().items():
        if any(marker in name.lower() for marker in SECRET_MARKERS):
            view[name] = "<redacted>" if value else "<unset>"
        else:
            view[name] = value
    return view


def log_startup_config(config: BaseSettings) -> None:
    logger.info("startup_config=%s", redacted_settings(config))
