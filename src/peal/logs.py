"""Process-wide logging setup for the CLI."""

from __future__ import annotations

import logging
from pathlib import Path

DEFAULT_LEVEL = "INFO"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_HANDLER_MARK = "_peal_handler"


def configure_logging(level: str | None = None, log_file: Path | None = None) -> logging.Logger:
    """Attach a stderr handler (and optionally a file handler) to the ``peal`` logger.

    Calling it again replaces the handlers installed by a previous call.
    """

    resolved = _resolve_level(level)
    root = reset_logging()

    formatter = logging.Formatter(LOG_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, _HANDLER_MARK, True)
        root.addHandler(handler)

    root.setLevel(resolved)
    return root


def _resolve_level(level: str | None) -> int:
    name = (level or DEFAULT_LEVEL).strip().upper()
    value = logging.getLevelName(name)
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return value


def reset_logging() -> logging.Logger:
    """Remove and close the handlers installed by `configure_logging`."""

    root = logging.getLogger("peal")
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
            handler.close()
    return root
