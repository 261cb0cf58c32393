import logging
import os
import json
from datetime import UTC, datetime
from typing import Optional, Dict, Any
from colorama import Fore, Style, init

init(autoreset=True)

from tqdm import tqdm


def setup_logger(
    name="catalog",
    level=logging.INFO,
    log_file="data/logs/scrape.log",
    console=True,
    structured_file: Optional[str] = None,
):
    """Setup logger with file, console and optional JSON-lines handlers"""

    # Create logs directory if not exists
    os.makedirs(os.path.dirname(log_file), exist_ok=True)
    if structured_file:
        os.makedirs(os.path.dirname(structured_file), exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Avoid duplicate handlers
    if logger.hasHandlers():
        logger.handlers.clear()

    logger.addFilter(DefaultEventMetadataFilter())

    # File handler
    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(level)
    file_formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - [%(event_type)s] - %(message)s"
    )
    file_handler.setFormatter(file_formatter)
    logger.addHandler(file_handler)

    if structured_file:
        json_handler = logging.FileHandler(structured_file)
        json_handler.setFormatter(StructuredFormatter())
        logger.addHandler(json_handler)

    # Console handler
    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_formatter = ColoredFormatter(
            "%(asctime)s - %(levelname_colored)s - [%(event_type_colored)s] - %(message)s"
        )
        console_handler.setFormatter(console_formatter)
        logger.addHandler(console_handler)

    return logger


def configure_from_settings(config: Optional[Dict[str, Any]] = None) -> logging.Logger:
    """Configure the root application logger from the `logging` settings section.

    Every module logger created with `logging.getLogger(__name__)` propagates to
    the root logger, so configuring it once at startup is enough.
    """
    config = config or {}
    level = getattr(logging, str(config.get("level", "INFO")).upper(), logging.INFO)
    structured = config.get("structured_file", "data/logs/extraction_events.jsonl")
    return setup_logger(
        name=None,
        level=level,
        log_file=config.get("file", "data/logs/scrape.log"),
        console=config.get("console", True),
        structured_file=structured if config.get("structured_enabled", True) else None,
    )


def create_progress_bar(iterable, desc="Progress", unit="it", total=None):
    """Create tqdm progress bar"""
    return tqdm(iterable, desc=desc, unit=unit, total=total, colour="green")


class StructuredFormatter(logging.Formatter):
    """JSON formatter for extraction event logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "event_type": getattr(record, "event_type", "general"),
            "event_data": getattr(record, "event_data", {}),
        }

        # Add exception info if present
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output with extraction event highlighting"""

    COLORS = {
        "DEBUG": Fore.CYAN,
        "INFO": Fore.BLUE,
        "WARNING": Fore.YELLOW,
        "ERROR": Fore.RED,
        "CRITICAL": Fore.MAGENTA + Style.BRIGHT,
    }

    EVENT_COLORS = {
        "strategy": Fore.GREEN,
        "healing": Fore.YELLOW + Style.BRIGHT,
        "pattern": Fore.CYAN,
        "vision": Fore.MAGENTA,
        "llm": Fore.MAGENTA,
        "validation": Fore.YELLOW,
        "general": Fore.WHITE,
    }

    def format(self, record):
        # Add colored level
        record.levelname_colored = (
            self.COLORS.get(record.levelname, Fore.WHITE)
            + record.levelname
            + Style.RESET_ALL
        )

        # Ensure event_type is available for formatting
        if not hasattr(record, "event_type"):
            record.event_type = "general"

        record.event_type_colored = (
            self.EVENT_COLORS.get(record.event_type, Fore.WHITE)
            + record.event_type.upper()
            + Style.RESET_ALL
        )

        return super().format(record)


class DefaultEventMetadataFilter(logging.Filter):
    """Ensure log records carry the event metadata expected by the formatters."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "event_type"):
            record.event_type = "general"
        if not hasattr(record, "event_data"):
            record.event_data = {}
        return True


def get_logger(name: str) -> logging.Logger:
    """Get logger instance for the given name.

    Handlers live on the root logger (see configure_from_settings); module
    loggers only need the metadata filter so formatters never miss fields.
    """
    logger = logging.getLogger(name)
    if not any(isinstance(f, DefaultEventMetadataFilter) for f in logger.filters):
        logger.addFilter(DefaultEventMetadataFilter())
    return logger


def log_extraction_event(
    event_type: str, event_data: Dict[str, Any], level: str = "INFO"
) -> None:
    """Structured extraction logging (strategy choice, healing stages, pattern updates)"""
    logger = get_logger("catalog.events")

    log_level = getattr(logging, level.upper(), logging.INFO)
    if not logger.isEnabledFor(log_level):
        return

    summary = ", ".join(f"{k}={v}" for k, v in event_data.items() if not isinstance(v, (dict, list)))
    record = logger.makeRecord(
        logger.name,
        log_level,
        __file__,
        0,
        f"{event_type}: {summary}" if summary else event_type,
        (),
        None,
    )

    # Add custom attributes
    record.event_type = event_type
    record.event_data = event_data

    logger.handle(record)
