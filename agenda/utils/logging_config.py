"""
Centralized Logging Configuration

When running in a container the timestamp is left to the runtime, so the
formatter omits it there.

Usage:
    from agenda.utils.logging_config import configure_logging
    configure_logging()
"""
import logging
import os
import sys

IS_CONTAINERIZED = bool(
    os.environ.get('FLY_APP_NAME') or
    os.environ.get('KUBERNETES_SERVICE_HOST') or
    os.path.exists('/.dockerenv')
)

CONTAINER_FORMAT = "[%(name)s] %(levelname)s: %(message)s"
LOCAL_FORMAT = "[%(asctime)s] [%(name)s] %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

NOISY_LOGGERS = ('httpx', 'httpcore', 'hpack', 'apscheduler.executors.default', 'realtime')


def configure_logging(level: int = logging.INFO, force: bool = False) -> None:
    """
    Configure root logging for the booking core.

    Args:
        level: Logging level (default: INFO)
        force: Force reconfiguration even if already configured
    """
    root_logger = logging.getLogger()

    if root_logger.handlers and not force:
        return

    if force:
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

    log_format = CONTAINER_FORMAT if IS_CONTAINERIZED else LOCAL_FORMAT
    datefmt = None if IS_CONTAINERIZED else DATE_FORMAT

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(log_format, datefmt=datefmt))

    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
