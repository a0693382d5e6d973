"""Helper utilities for debugging sfx_reduce execution."""

from __future__ import annotations

import logging
import os

ENV_DEBUG = "SFX_REDUCE_DEBUG"


def is_debug_enabled() -> bool:
    """Return ``True`` if ``SFX_REDUCE_DEBUG`` is set to a truthy value."""
    val = os.environ.get(ENV_DEBUG, "")
    return bool(val) and val.lower() not in {"0", "false", "no"}


def debug_print(*args, **kwargs) -> None:
    """Print only when ``SFX_REDUCE_DEBUG`` is enabled."""
    if is_debug_enabled():
        print(*args, **kwargs)


def _level_from_name(name: str, default: int) -> int:
    level = getattr(logging, name.upper(), None)
    return level if isinstance(level, int) else default


def enable_numba_logging(default_level: str = "DEBUG") -> None:
    """Configure the ``numba`` logger when debug mode is active.

    The level comes from ``NUMBA_LOG_LEVEL`` if defined or ``default_level``
    otherwise. Nothing happens outside debug mode.
    """
    if not is_debug_enabled():
        return

    level_name = os.environ.get("NUMBA_LOG_LEVEL", default_level).upper()
    os.environ["NUMBA_LOG_LEVEL"] = level_name

    logger = logging.getLogger("numba")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s numba: %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(_level_from_name(level_name, logging.DEBUG))


def configure_logging(level: str | int | None = None) -> logging.Logger:
    """Attach a single stream handler to the ``sfx_reduce`` logger.

    Without an explicit *level* the logger runs at DEBUG in debug mode and
    INFO otherwise. Calling this repeatedly does not stack handlers.
    """
    if level is None:
        resolved = logging.DEBUG if is_debug_enabled() else logging.INFO
    elif isinstance(level, str):
        resolved = _level_from_name(level, logging.INFO)
    else:
        resolved = int(level)

    logger = logging.getLogger("sfx_reduce")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logger.addHandler(handler)
    logger.setLevel(resolved)
    enable_numba_logging()
    return logger
