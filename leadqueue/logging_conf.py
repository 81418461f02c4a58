"""Logging for the queue: console, rotating file and optional BetterStack."""
import logging
import sys
from logging.handlers import RotatingFileHandler
from logtail import LogtailHandler

from leadqueue import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _level(name):
    return getattr(logging, str(name).upper(), logging.INFO)


def setup_logging(level=None):
    """Configure the root logger once per process.

    ``level`` overrides ``LOG_LEVEL`` (used by the ``--log-level`` CLI flag).
    The file handler always records INFO and above so the log directory keeps
    a usable history even when the console runs quieter.
    """
    level = _level(level or settings.LOG_LEVEL)
    formatter = logging.Formatter(LOG_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    file_handler = RotatingFileHandler(
        settings.LOGS_DIR / "leadqueue.log", maxBytes=10 * 1024 * 1024, backupCount=5
    )
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    if settings.BETTERSTACK_SOURCE_TOKEN:
        try:
            handler_kwargs = {"source_token": settings.BETTERSTACK_SOURCE_TOKEN}
            if settings.BETTERSTACK_INGEST_HOST:
                handler_kwargs["host"] = settings.BETTERSTACK_INGEST_HOST
            betterstack_handler = LogtailHandler(**handler_kwargs)
            betterstack_handler.setLevel(logging.DEBUG)
            betterstack_handler.setFormatter(formatter)
            root_logger.addHandler(betterstack_handler)
            host_info = settings.BETTERSTACK_INGEST_HOST or "default (in.logs.betterstack.com)"
            root_logger.info(f"BetterStack logging enabled (host: {host_info})")
        except Exception as e:
            root_logger.warning(f"Failed to initialize BetterStack logging: {e}")

    # Webhook retries are logged by us; the transport chatter is noise
    for noisy in ("urllib3", "requests"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return root_logger


setup_logging()
logger = logging.getLogger("leadqueue")
