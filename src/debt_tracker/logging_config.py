import logging
import os
from pathlib import Path
from typing import List, Optional


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] - %(message)s"


def _level(name: Optional[str], fallback: int = logging.INFO) -> int:
    value = logging.getLevelName((name or "").strip().upper())
    return value if isinstance(value, int) else fallback


def configure_logging(level: str = "INFO", file_path: Optional[str] = None) -> None:
    """
    Send every logger to stderr, and to `file_path` too when one is given.

    Calling it again replaces the previous handlers; the CLI does that once the YAML config is loaded.
    `SCHEDULER_LOG_LEVEL` tunes the per-reminder chatter of `debt_tracker.scheduler` on its own.
    """
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if file_path:
        log_file = Path(file_path)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(level=_level(level), format=LOG_FORMAT, handlers=handlers, force=True)

    scheduler_level = os.getenv("SCHEDULER_LOG_LEVEL", "").strip()
    if scheduler_level:
        logging.getLogger("debt_tracker.scheduler").setLevel(_level(scheduler_level))
