"""
Centralized logging configuration for the transit ledger.
"""

import logging
import sys
from typing import Optional

from .config import AppConfig

# Chatty client libraries are kept at WARNING unless LOG_LEVEL is DEBUG
_LIBRARY_LOGGERS = ('botocore', 'boto3', 'urllib3', 'opensearch', 'pdfminer')


def setup_logging(config: Optional[AppConfig] = None) -> None:
    """
    Setup centralized logging configuration.

    Args:
        config: AppConfig instance, uses default if None
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    level = getattr(logging, config.log_level.upper())
    logging.basicConfig(level=level,
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                        handlers=[logging.StreamHandler(sys.stdout)])

    if level > logging.DEBUG:
        for name in _LIBRARY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str, config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Get a logger with proper configuration.

    Args:
        name: Logger name (usually __name__)
        config: AppConfig instance, uses default if None

    Returns:
        Configured logger instance
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, config.log_level.upper()))
    return logger


def log_security_event(logger: logging.Logger, message: str) -> None:
    """Log a tenancy-relevant event so it can be picked out of the stream."""
    logger.error(f'SECURITY: {message}')
