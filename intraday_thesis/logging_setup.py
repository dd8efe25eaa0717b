from __future__ import annotations

import logging
import os
import sys

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def parse_level(value: str | int | None, default: int = logging.INFO) -> int:
    """Accept either a numeric level or a name such as ``"debug"``."""
    if value is None or value == "":
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    level = logging.getLevelName(text.upper())
    return level if isinstance(level, int) else default


def configure_logging(
    *,
    level: int | str = logging.INFO,
    log_file: str | None = None,
    console: bool = True,
) -> None:
    handlers: list[logging.Handler] = []

    if console:
        handlers.append(logging.StreamHandler(stream=sys.stderr))

    if log_file:
        log_file = str(log_file)
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    if not handlers:
        # Never leave logging unconfigured.
        handlers.append(logging.NullHandler())

    logging.basicConfig(level=parse_level(level), format=_FORMAT, handlers=handlers, force=True)
