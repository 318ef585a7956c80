"""Logging setup: readable console output plus JSON files for log shipping.

Sync and order code attach context (``run_id``, ``trigger``, ``order_id``,
``product_id``) through ``get_logger``; both formatters surface it so a
whole reconciliation cycle can be followed by its run id.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from pythonjsonlogger import jsonlogger

from catalog_mirror.config import settings

SERVICE_NAME = "catalog-mirror"

# Context keys rendered by the console formatter, in this order
CONTEXT_FIELDS = ("run_id", "trigger", "order_id", "product_id")

# Libraries whose INFO output is noise (httpx logs full request URLs,
# and catalog URLs carry the access token)
QUIET_LOGGERS = ("httpx", "httpcore", "apscheduler.executors.default")


class CatalogJsonFormatter(jsonlogger.JsonFormatter):
    """One JSON object per line, stamped with service and source location."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.utcnow().isoformat() + 'Z'
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['service'] = SERVICE_NAME
        log_record['source'] = f"{record.filename}:{record.lineno}"


class ContextFormatter(logging.Formatter):
    """Console formatter that appends any context fields as ``[key=value ...]``."""

    def format(self, record):
        line = super().format(record)
        context = [
            f"{key}={getattr(record, key)}"
            for key in CONTEXT_FIELDS
            if getattr(record, key, None) is not None
        ]
        if context:
            line = f"{line} [{' '.join(context)}]"
        return line


def setup_logging(base_dir: str | Path | None = None):
    """Configure root logging for the API, the worker and the scripts.

    Args:
        base_dir: Directory that holds the logs/ folder (default: cwd)
    """
    logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / "logs"
    logs_dir.mkdir(exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        ContextFormatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root_logger.addHandler(console_handler)

    json_formatter = CatalogJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")

    json_handler = logging.FileHandler(logs_dir / "app.log")
    json_handler.setFormatter(json_formatter)
    root_logger.addHandler(json_handler)

    error_handler = logging.FileHandler(logs_dir / "error.log")
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(json_formatter)
    root_logger.addHandler(error_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


class ContextAdapter(logging.LoggerAdapter):
    """Merges the adapter's context into each call's ``extra``."""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


def get_logger(name: str, **context) -> ContextAdapter:
    """
    Get a logger that tags every record with the given context.

    Example:
        log = get_logger(__name__, run_id=run_id[:16], trigger="manual")
    """
    return ContextAdapter(logging.getLogger(name), context)
