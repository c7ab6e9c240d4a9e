"""Logging configuration for the reservation and key custody service"""

import logging
import logging.handlers
import os

from infrastructure.settings import AppSettings

DETAILED_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d in %(funcName)s()] - %(message)s'
CONSOLE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(settings: AppSettings) -> None:
    """
    Configure the root logger: console output always, plus rotating main and
    error log files when ``settings.log_dir`` is set.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level, logging.INFO))

    # Clear existing handlers so repeated setup does not duplicate output
    root_logger.handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.WARNING if settings.production_mode else logging.INFO)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
    root_logger.addHandler(console_handler)

    if not settings.log_dir:
        return

    os.makedirs(settings.log_dir, exist_ok=True)
    detailed_formatter = logging.Formatter(DETAILED_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

    main_file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(settings.log_dir, 'service.log'),
        maxBytes=10*1024*1024,  # 10MB
        backupCount=5,
        encoding='utf-8'
    )
    main_file_handler.setLevel(logging.INFO)
    main_file_handler.setFormatter(detailed_formatter)
    root_logger.addHandler(main_file_handler)

    error_file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(settings.log_dir, 'errors.log'),
        maxBytes=5*1024*1024,  # 5MB
        backupCount=5,
        encoding='utf-8'
    )
    error_file_handler.setLevel(logging.ERROR)
    error_file_handler.setFormatter(detailed_formatter)
    root_logger.addHandler(error_file_handler)

    # Keep third-party request logging quieter than our own
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)
