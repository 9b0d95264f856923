"""Logging configuration for the application"""
import logging

from app.core.config import settings

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = ("urllib3", "httpx", "httpcore", "jose", "multipart")


def setup_logging():
    """Configure root logging once at startup

    Application code logs through module loggers or the named loggers
    (oauth, session, rate_limit, security, api_access and one per provider).
    """
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def mask_token(token) -> str:
    """Log-safe prefix of a secret value"""
    if not token:
        return "<none>"
    return f"{token[:6]}..."
