"""DB Feed - incremental database feed with change detection and resumable scans."""

__version__ = "1.0.0"
__author__ = "DB Feed Contributors"

from db_feed.config import Settings, load_settings

__all__ = ["Settings", "load_settings", "__version__"]
