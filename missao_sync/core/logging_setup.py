"""
Logging configuration for missao-sync
"""

import logging
import logging.handlers
from pathlib import Path

from .config_manager import SyncConfiguration

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
ROOT_LOGGER = 'missao_sync'

logger = logging.getLogger('missao_sync.core.logging_setup')


def setup_logging(config: SyncConfiguration) -> logging.Logger:
    """
    Attach console and optional rotating file handlers to the package logger.

    Safe to call more than once; handlers installed by a previous call are
    replaced. Failures are logged and never raised.
    """
    package_logger = logging.getLogger(ROOT_LOGGER)
    try:
        package_logger.setLevel(config.log_level)

        for handler in list(package_logger.handlers):
            if getattr(handler, '_missao_handler', False):
                package_logger.removeHandler(handler)
                handler.close()

        formatter = logging.Formatter(LOG_FORMAT)

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        console_handler._missao_handler = True
        package_logger.addHandler(console_handler)

        if config.log_file_path:
            log_path = Path(config.log_file_path)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                filename=log_path,
                encoding='utf-8',
                maxBytes=config.log_max_bytes,
                backupCount=config.log_backup_count
            )
            file_handler.setFormatter(formatter)
            file_handler._missao_handler = True
            package_logger.addHandler(file_handler)

        package_logger.propagate = False
        logger.debug("Logging configured")

    except Exception as e:
        logger.error(f"Failed to setup logging: {e}")

    return package_logger
