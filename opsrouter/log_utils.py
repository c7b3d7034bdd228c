import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from opsrouter.sanitize import redact

PREVIEW_CHARS = 50
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
ROOT_LOGGER = "opsrouter"


def _wants_stdout(log_cfg: Dict[str, Any]) -> bool:
    env = os.environ.get("OPSROUTER_LOG_STDOUT")
    if env is not None:
        return env == "1"
    return bool(log_cfg.get("stdout"))


def _build_handlers(log_cfg: Dict[str, Any]) -> List[logging.Handler]:
    path = Path(log_cfg.get("path", "logs/opsrouter.log"))
    path.parent.mkdir(parents=True, exist_ok=True)
    handlers: List[logging.Handler] = [
        RotatingFileHandler(
            path,
            encoding="utf-8",
            maxBytes=int(log_cfg.get("max_bytes", 2_000_000)),
            backupCount=int(log_cfg.get("backups", 3)),
        )
    ]
    if _wants_stdout(log_cfg):
        handlers.append(logging.StreamHandler())
    fmt = logging.Formatter(LOG_FORMAT)
    for h in handlers:
        h.setFormatter(fmt)
        h.set_name(ROOT_LOGGER)
    return handlers


def setup_logger(log_cfg: Dict[str, Any]) -> logging.Logger:
    """
    Attach rotating-file (and optional stdout) handlers to the package logger.

    Calling it again swaps the handlers it installed earlier for ones matching
    the new settings; handlers added by the host application are left alone.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    for h in list(logger.handlers):
        if h.get_name() == ROOT_LOGGER:
            logger.removeHandler(h)
            h.close()
    logger.setLevel(getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO))
    for h in _build_handlers(log_cfg):
        logger.addHandler(h)
    return logger


def preview(text: Optional[str], limit: int = PREVIEW_CHARS) -> str:
    """Redacted, truncated rendering of user input for log lines."""
    cleaned = redact(text or "")
    if len(cleaned) <= limit:
        return cleaned
    return cleaned[:limit] + "..."
