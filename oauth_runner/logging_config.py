import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import config


def _parse_level(name: str, default: int | None = None) -> int | None:
    level = getattr(logging, str(name or "").strip().upper(), None)
    return level if isinstance(level, int) else default


def apply_module_levels() -> None:
    """Set the configured per-logger levels; empty or unknown names are left to inherit."""
    for name, level_name in config.LOGGING.MODULE_LEVELS:
        level = _parse_level(level_name)
        if level is not None:
            logging.getLogger(name).setLevel(level)


def setup_logging() -> None:
    """Configure service logging: console plus a rotating file under the data dir."""
    level = _parse_level(config.LOGGING.LEVEL, logging.INFO)
    apply_module_levels()

    root_logger = logging.getLogger()
    if root_logger.handlers:
        return

    log_file = Path(config.LOGGING.FILE)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # Handlers stay unfiltered so a module level below the root level still gets through
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=int(config.LOGGING.MAX_BYTES),
        backupCount=int(config.LOGGING.BACKUP_COUNT),
    )
    file_handler.setFormatter(formatter)

    root_logger.setLevel(level)
    root_logger.addHandler(stream_handler)
    root_logger.addHandler(file_handler)
