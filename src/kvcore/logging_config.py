# src/kvcore/logging_config.py
"""
Logging setup for kvcore command-line tools.

The library itself only creates module loggers (``logging.getLogger(__name__)``)
and never installs handlers. Entry points such as ``kvcore-migrate`` call
:func:`configure_logging` once at startup.

Key concepts:

    **Display filter**: when ``console_enabled=False`` (the default) the
    console handler still exists but only passes records that carry
    ``extra={"display": True}``. Operator-facing progress ("Found 12 rows to
    migrate") reaches the terminal while driver chatter stays in the log file.

    **File output**: ``file_mode="per_run"`` writes a new timestamped file per
    invocation, ``file_mode="single"`` appends to one rotating file.

Usage:
    from kvcore.logging_config import configure_logging, log_display

    configure_logging(app_name="kvcore-migrate", config={"file_enabled": False})
    log_display(logger, logging.INFO, "Migrated %d row(s)", count)
"""

import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

DEFAULT_LOGGING_CONFIG: dict[str, Any] = {
    "console_enabled": False,
    "console_level": "WARNING",
    "console_format": "%(levelname)s - %(message)s",
    "file_enabled": False,
    "file_level": "DEBUG",
    "file_directory": "~/.local/share/kvcore/logs",
    "file_mode": "per_run",
    "file_name_pattern": "{app}_{timestamp:%Y%m%d_%H%M%S}.log",
    "file_single_name": "{app}.log",
    "file_format": "%(asctime)s [%(levelname)-8s] %(name)-30s - %(message)s (%(filename)s:%(lineno)d)",
    "rotation_max_bytes": 10 * 1024 * 1024,  # 10 MB
    "rotation_backup_count": 5,
    "display_min_level": "INFO",
    "components": {
        "kvcore": "INFO",
        "psycopg": "WARNING",
        "psycopg.pool": "WARNING",
        "aiomysql": "WARNING",
        "pymongo": "WARNING",
        "aiosqlite": "WARNING",
        "asyncio": "WARNING",
    },
}


def _resolve_level(value: Any, fallback: int) -> int:
    if isinstance(value, int):
        return value
    level = logging.getLevelName(str(value).upper())
    return level if isinstance(level, int) else fallback


class DisplayFilter(logging.Filter):
    """Controls which log records pass through to the console handler.

    With the console globally enabled (``--verbose``) every record passes and
    the handler level does the filtering. Otherwise only records flagged with
    ``display=True`` at or above ``display_min_level`` pass.
    """

    def __init__(
        self,
        console_globally_enabled: bool = False,
        display_min_level: int = logging.INFO,
    ) -> None:
        super().__init__()
        self.console_globally_enabled = console_globally_enabled
        self.display_min_level = display_min_level

    def filter(self, record: logging.LogRecord) -> bool:
        if self.console_globally_enabled:
            return True
        if getattr(record, "display", False):
            return record.levelno >= self.display_min_level
        return False


class LoggingManager:
    """
    Singleton that owns the handlers installed by :func:`configure_logging`.

    Configuration happens at most once unless ``force_reconfigure`` is given,
    so library code importing this module never clobbers an application's
    own logging setup.
    """

    _instance: Optional["LoggingManager"] = None
    _configured: bool = False
    _log_file_path: Path | None = None
    _console_handler: logging.Handler | None = None
    _file_handler: logging.Handler | None = None

    def __new__(cls) -> "LoggingManager":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @classmethod
    def get_instance(cls) -> "LoggingManager":
        """Get the singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def is_configured(cls) -> bool:
        return cls._configured

    def configure(
        self,
        app_name: str = "kvcore",
        config: dict[str, Any] | None = None,
        force_reconfigure: bool = False,
    ) -> Path | None:
        """
        Install console and (optionally) file handlers on the root logger.

        Args:
            app_name: Name used in the log file name.
            config: Overrides merged on top of DEFAULT_LOGGING_CONFIG.
            force_reconfigure: Replace handlers even if already configured.

        Returns:
            Path of the log file, or None when file logging is disabled.
        """
        if LoggingManager._configured and not force_reconfigure:
            return LoggingManager._log_file_path

        log_config = {**DEFAULT_LOGGING_CONFIG, **(config or {})}

        root_logger = logging.getLogger()
        for handler in (LoggingManager._console_handler, LoggingManager._file_handler):
            if handler is not None:
                root_logger.removeHandler(handler)
                handler.close()
        LoggingManager._console_handler = None
        LoggingManager._file_handler = None
        LoggingManager._log_file_path = None
        root_logger.setLevel(logging.DEBUG)

        console_globally_enabled = bool(log_config.get("console_enabled", False))
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(logging.Formatter(log_config["console_format"]))
        if console_globally_enabled:
            console_handler.setLevel(_resolve_level(log_config["console_level"], logging.WARNING))
        else:
            # The filter is the only gate when the console is "off".
            console_handler.setLevel(logging.DEBUG)
        console_handler.addFilter(
            DisplayFilter(
                console_globally_enabled=console_globally_enabled,
                display_min_level=_resolve_level(log_config["display_min_level"], logging.INFO),
            )
        )
        root_logger.addHandler(console_handler)
        LoggingManager._console_handler = console_handler

        if log_config.get("file_enabled", False):
            file_handler, log_file_path = self._create_file_handler(log_config, app_name)
            if file_handler is not None:
                root_logger.addHandler(file_handler)
                LoggingManager._file_handler = file_handler
                LoggingManager._log_file_path = log_file_path

        for component_name, level_str in log_config.get("components", {}).items():
            logging.getLogger(component_name).setLevel(_resolve_level(level_str, logging.INFO))

        LoggingManager._configured = True
        logging.getLogger(__name__).debug(
            f"Logging configured for '{app_name}'. Log file: {LoggingManager._log_file_path}"
        )
        return LoggingManager._log_file_path

    def _create_file_handler(
        self, config: dict[str, Any], app_name: str
    ) -> tuple[logging.Handler | None, Path | None]:
        log_dir = Path(os.path.expanduser(config["file_directory"]))
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            sys.stderr.write(f"Warning: Cannot create log directory {log_dir}: {e}\n")
            return None, None

        try:
            if config.get("file_mode") == "single":
                log_file_path = log_dir / config["file_single_name"].format(app=app_name)
                handler: logging.Handler = RotatingFileHandler(
                    log_file_path,
                    maxBytes=config["rotation_max_bytes"],
                    backupCount=config["rotation_backup_count"],
                    encoding="utf-8",
                )
            else:
                filename = config["file_name_pattern"].format(app=app_name, timestamp=datetime.now())
                log_file_path = log_dir / filename
                handler = logging.FileHandler(log_file_path, encoding="utf-8")
        except OSError as e:
            sys.stderr.write(f"Warning: Cannot create log file in {log_dir}: {e}\n")
            return None, None

        handler.setLevel(_resolve_level(config["file_level"], logging.DEBUG))
        handler.setFormatter(logging.Formatter(config["file_format"]))
        return handler, log_file_path

    def set_console_level(self, level: str | int) -> None:
        """Change the console handler's log level at runtime."""
        if LoggingManager._console_handler is not None:
            LoggingManager._console_handler.setLevel(_resolve_level(level, logging.WARNING))


def configure_logging(
    app_name: str = "kvcore",
    config: dict[str, Any] | None = None,
    force_reconfigure: bool = False,
) -> Path | None:
    """
    Configure logging for a kvcore entry point.

    Example:
        configure_logging(
            app_name="kvcore-migrate",
            config={"console_enabled": True, "console_level": "DEBUG"},
        )
    """
    return LoggingManager.get_instance().configure(
        app_name=app_name, config=config, force_reconfigure=force_reconfigure
    )


def log_display(
    logger: logging.Logger,
    level: int,
    msg: str,
    *args: Any,
    **kwargs: Any,
) -> None:
    """Log a message that also reaches the console in quiet mode.

    Wraps ``logger.log()`` and merges ``display=True`` into ``extra``.
    """
    extra = kwargs.pop("extra", None) or {}
    extra["display"] = True
    kwargs["extra"] = extra
    logger.log(level, msg, *args, **kwargs)


def get_log_file_path() -> Path | None:
    """Get the current log file path."""
    return LoggingManager._log_file_path
