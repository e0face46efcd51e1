"""Utility modules for DB Feed."""

from db_feed.utils.logger import get_logger, setup_logging
from db_feed.utils.display import ProgressDisplay

__all__ = ["setup_logging", "get_logger", "ProgressDisplay"]
