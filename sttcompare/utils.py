from datetime import datetime
from logging import getLogger, basicConfig, getLevelName, DEBUG, INFO, WARNING, FileHandler, Formatter, Filter
from pathlib import Path
from typing import Optional

from config import LOG_LEVEL, LOG_PATH


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

# Prefixes for project modules (DEBUG level in file)
PROJECT_PREFIXES = ("sttcompare.", "helpers.", "__main__", "compare")


class _ThirdPartyLogFilter(Filter):
    """Filter that only passes records from 3rd party modules at INFO+."""
    def filter(self, record):
        is_project = record.name.startswith(PROJECT_PREFIXES)
        if is_project:
            return True  # project code: pass all levels
        return record.levelno >= INFO  # 3rd party: INFO and above only


_LOG_FORMAT = "%(asctime)s %(levelname)s:%(name)s:%(funcName)s(): %(message)s"


def console_level(log_level: str = LOG_LEVEL) -> int:
    """DEV = DEBUG, PROD = WARNING, otherwise a standard level name (INFO, ERROR, ...)."""
    if log_level == "DEV":
        return DEBUG
    if log_level == "PROD":
        return WARNING
    level = getLevelName(log_level)
    return level if isinstance(level, int) else INFO


def setup_logging(level: Optional[int] = None) -> Path:
    """
    Configure logging for the application.

    Console: level (default from LOG_LEVEL: DEV = DEBUG, PROD = WARNING), INFO for chatty 3rd party libs.
    File: Always DEBUG for project code, INFO for 3rd party.

    Returns the path to the log file.
    """
    # Root stays at DEBUG so the file gets everything, the console handler is filtered by level.
    basicConfig(level=DEBUG, format=_LOG_FORMAT)
    for handler in getLogger().handlers:
        handler.setLevel(console_level() if level is None else level)
    getLogger("websockets.client").setLevel(INFO)
    getLogger("httpcore").setLevel(INFO)
    getLogger("httpx").setLevel(INFO)
    getLogger("urllib3").setLevel(INFO)
    getLogger("google").setLevel(INFO)
    getLogger("asyncio").setLevel(INFO)

    # File handler: DEBUG for project code, INFO for 3rd party
    log_filename = LOG_PATH / f"app_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    file_handler = FileHandler(log_filename, encoding="utf-8")
    file_handler.setLevel(DEBUG)
    file_handler.setFormatter(Formatter(_LOG_FORMAT))
    file_handler.addFilter(_ThirdPartyLogFilter())
    getLogger().addHandler(file_handler)

    getLogger(__name__).info("Logging to file: %s", log_filename)
    return log_filename
