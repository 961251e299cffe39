"""Logging setup for the flow engine process."""

import logging
import os
import time
from logging.handlers import TimedRotatingFileHandler

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(threadName)s - %(name)s - %(message)s"


class SizeAndTimeRotatingHandler(TimedRotatingFileHandler):
    """Rotates at the scheduled time or once the file exceeds ``max_bytes``."""

    def __init__(self, filename: str, max_bytes: int, backup_count: int = 0, **kwargs):
        self.max_bytes = max_bytes
        super().__init__(filename, backupCount=backup_count, **kwargs)

    def _too_large(self) -> bool:
        if self.stream is None or self.max_bytes <= 0:
            return False
        self.stream.seek(0, os.SEEK_END)
        return self.stream.tell() >= self.max_bytes

    def shouldRollover(self, record) -> int:
        if int(time.time()) >= self.rolloverAt:
            return 1
        return 1 if self._too_large() else 0

    def doRollover(self) -> None:
        super().doRollover()
        # a size-triggered rollover must not shift the next scheduled one
        self.rolloverAt = self.computeRollover(int(time.time()))


def parse_level(level: int | str) -> int:
    """Accept ``logging.INFO`` or ``"info"``."""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.strip().upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level}")
    return value


def configure_logging(
    log_dir: str | None = "logs",
    log_file: str = "flow_engine.log",
    level: int | str = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 7,
    console: bool = True,
) -> logging.Logger:
    """Install console and rotating file handlers on the root logger.

    Args:
        log_dir: Directory for the log file. ``None`` disables file logging.
        log_file: Log file name.
        level: Level name or number.
        max_bytes: Size that triggers an early rollover.
        backup_count: Rotated files to keep.
        console: Also log to stderr.

    Returns:
        The root logger.
    """
    level = parse_level(level)
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = SizeAndTimeRotatingHandler(
            filename=os.path.join(log_dir, log_file),
            when="midnight",
            interval=1,
            max_bytes=max_bytes,
            backup_count=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    return root
