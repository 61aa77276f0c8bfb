"""
Logging setup for processes embedding the ingestion core.
Library modules only create loggers; handlers are installed here.
"""

import logging
from typing import Union


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    """Install a root handler with the '%(levelname)s: %(message)s' format."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logging.basicConfig(level=level, format='%(levelname)s: %(message)s')

    # Quiet per-request logs from the HTTP clients
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
