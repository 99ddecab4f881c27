import logging
import os
from typing import Optional, Union

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
NOISY_LOGGERS = ("websockets", "asyncio", "aiohttp.access")


def resolve_level(level: Union[int, str, None]) -> int:
    if isinstance(level, int):
        return level
    name = (level or os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: Union[int, str, None] = None, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging with a consistent format.

    Called once from the main entrypoint. Later calls are ignored if handlers exist.
    Library loggers that chatter at DEBUG are held at WARNING.
    """
    if logging.getLogger().handlers:
        return

    resolved = resolve_level(level)
    logging.basicConfig(level=resolved, format=log_format or DEFAULT_FORMAT)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved, logging.WARNING))
