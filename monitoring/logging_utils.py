import logging
from typing import Optional, Union


def setup_logging(level: Union[int, str] = logging.INFO, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging with a consistent format.

    ``level`` may be a logging constant or a level name such as ``"DEBUG"``
    taken from ``monitoring.log_level``. Safe to call more than once; later
    calls are ignored once the root logger has handlers.
    """
    if logging.getLogger().handlers:
        return

    if isinstance(level, str):
        level = logging.getLevelName(level.strip().upper())
        if not isinstance(level, int):
            level = logging.INFO

    fmt = log_format or "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)
    # websockets logs every frame at DEBUG
    logging.getLogger("websockets").setLevel(max(level, logging.INFO))
