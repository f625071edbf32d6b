"""
Per-component logging for the KWH event indexer.

Every component owns a file logger under logs/<Folder>/ (folders listed in
app.json logging.module_folders). Records are written as one-line text by
default or as JSON objects when logging.use_json is set; structured context
passed through `extra=` (block range, contract, event, tx hash, error)
becomes top-level JSON fields.

Usage:
    from indexer_logging.logger_manager import setup_module_logger

    logger = setup_module_logger("backfill_engine", "backfill_engine.log", module_folder="Backfill_Logs")
    logger.warning("batch failed", extra={"contract": addr, "from_block": 100, "to_block": 109})
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from config.loader import get_config

_LOGGING_CFG: dict[str, Any] = get_config().get_app_config().get("logging", {})

LOG_ROOT = Path(__file__).resolve().parent.parent / _LOGGING_CFG.get("log_dir", "logs")

# Fields lifted out of `extra=` into JSON output
CONTEXT_FIELDS = (
    "block_number",
    "from_block",
    "to_block",
    "contract",
    "event_name",
    "tx_hash",
    "error",
)


# ============================================================================
# FORMATTERS
# ============================================================================


class JSONFormatter(logging.Formatter):
    """One JSON object per line with indexer context fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        payload.update(
            {field: getattr(record, field) for field in CONTEXT_FIELDS if hasattr(record, field)}
        )
        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Aligned single-line text for files and the console."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)-22s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


# ============================================================================
# LOGGER FACTORY
# ============================================================================

_loggers: dict[tuple[str, str | None, str], logging.Logger] = {}


def create_module_log_directories() -> list[Path]:
    """Create logs/ and every configured component folder. Returns the folders."""
    folders = [LOG_ROOT / name for name in _LOGGING_CFG.get("module_folders", {}).values()]
    for folder in [LOG_ROOT, *folders]:
        folder.mkdir(parents=True, exist_ok=True)
    return folders


def _handler(handler: logging.Handler, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_module_logger(
    name: str,
    log_file: str,
    level: int = logging.INFO,
    module_folder: str | None = None,
    use_json_formatter: bool = False,
    use_console: bool = False,
) -> logging.Logger:
    """
    Return the file logger for one component, creating it on first use.

    Args:
        name: Component logger name.
        log_file: File name inside logs/<module_folder>/ (or logs/).
        level: Minimum level for the logger and its handlers.
        module_folder: Component folder, e.g. 'Backfill_Logs'.
        use_json_formatter: Write JSON lines instead of text.
        use_console: Mirror records to stderr (entrypoint only).
    """
    key = (name, module_folder, log_file)
    cached = _loggers.get(key)
    if cached is not None:
        return cached

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False

    if not logger.handlers:
        path = (LOG_ROOT / module_folder if module_folder else LOG_ROOT) / log_file
        path.parent.mkdir(parents=True, exist_ok=True)
        file_formatter = JSONFormatter() if use_json_formatter else HumanReadableFormatter()
        logger.addHandler(
            _handler(logging.FileHandler(path, mode="a", encoding="utf-8"), level, file_formatter)
        )
        if use_console:
            logger.addHandler(_handler(logging.StreamHandler(sys.stderr), level, HumanReadableFormatter()))

    _loggers[key] = logger
    return logger


def level_from_config(default: int = logging.INFO) -> int:
    """Level named by app.json logging.level, or `default` when unset or unknown."""
    level = getattr(logging, str(_LOGGING_CFG.get("level", "")).upper(), None)
    return level if isinstance(level, int) else default
