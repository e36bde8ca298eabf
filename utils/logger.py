import json
import logging
import os
from datetime import UTC, datetime
from typing import Optional, Union

from colorama import Fore, Style, init

init(autoreset=True)


# Keys of ``extra={...}`` that are promoted into the structured log line.
CONTEXT_FIELDS = ("job_id", "worker_id", "url", "provider_id", "crawler_type")


class ContextDefaultsFilter(logging.Filter):
    """Ensure records carry the crawl context attributes the formatters expect."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401 (doc inherited)
        for key in CONTEXT_FIELDS:
            if not hasattr(record, key):
                setattr(record, key, None)
        return True


class StructuredFormatter(logging.Formatter):
    """JSON lines formatter for the worker log file"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored console formatter; job id is highlighted when present"""

    COLORS = {
        "DEBUG": Fore.CYAN,
        "INFO": Fore.BLUE,
        "WARNING": Fore.YELLOW,
        "ERROR": Fore.RED,
        "CRITICAL": Fore.MAGENTA + Style.BRIGHT,
    }

    def format(self, record):
        record.levelname_colored = (
            self.COLORS.get(record.levelname, Fore.WHITE)
            + record.levelname
            + Style.RESET_ALL
        )
        job_id = getattr(record, "job_id", None)
        record.job_tag = (
            f"{Fore.GREEN}[job {job_id}]{Style.RESET_ALL} " if job_id is not None else ""
        )
        return super().format(record)


def _resolve_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    return getattr(logging, str(level).upper(), logging.INFO)


def setup_logger(
    name: Optional[str] = None,
    level: Union[int, str] = logging.INFO,
    log_file: Optional[str] = "data/logs/crawler.log",
    console: bool = True,
    structured: bool = True,
) -> logging.Logger:
    """Setup logger with file and console handlers.

    Called once by process entry points (worker, API). Library modules only use
    ``logging.getLogger(__name__)`` and inherit these handlers through the root
    logger when ``name`` is None.
    """
    resolved_level = _resolve_level(level)

    logger = logging.getLogger(name)
    logger.setLevel(resolved_level)

    # Avoid duplicate handlers
    if logger.hasHandlers():
        logger.handlers.clear()

    logger.addFilter(ContextDefaultsFilter())

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(resolved_level)
        file_handler.addFilter(ContextDefaultsFilter())
        if structured:
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
        logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(resolved_level)
        console_handler.addFilter(ContextDefaultsFilter())
        console_handler.setFormatter(
            ColoredFormatter(
                "%(asctime)s - %(levelname_colored)s - %(job_tag)s%(name)s - %(message)s"
            )
        )
        logger.addHandler(console_handler)

    return logger
