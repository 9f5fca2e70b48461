"""
Logging bootstrap for the allocation controller.

Modules never configure logging themselves; they only do
``logger = logging.getLogger(__name__)``. The entry point calls
configure_logging() once.
"""

from __future__ import annotations

import logging
from typing import Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    """Install one stream handler on the root logger."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=[logging.StreamHandler()], force=True)
