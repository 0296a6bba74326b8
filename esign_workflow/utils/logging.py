"""Logging setup shared by the API, the worker and the CLI"""

import logging
from typing import Optional

from rich.logging import RichHandler

from esign_workflow.utils.config import get_settings


def configure_logging(level: Optional[str] = None) -> None:
    """Install a single rich handler on the root logger."""
    level_name = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.handlers = [RichHandler(rich_tracebacks=True, show_path=False)]

    # APScheduler logs every job run at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
