import io
import json
import logging
import sys
from datetime import datetime
from typing import TextIO

LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

logger = logging.getLogger("waha_relay")


# Force a UTF-8 text stream for logging to avoid 'charmap' errors on Windows consoles
def _utf8_stream_for_stdout() -> TextIO:
    try:
        if hasattr(sys.stdout, "buffer"):
            return io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace", line_buffering=True)
    except (AttributeError, ValueError):
        pass
    return sys.stdout


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(message)s",
        handlers=[logging.StreamHandler(_utf8_stream_for_stdout())],
        force=True,  # override handlers added by uvicorn
    )
    set_level(level)


def set_level(level: str) -> str:
    name = (level or "INFO").upper()
    if name not in LEVELS:
        raise ValueError(f"invalid log level: {level}")
    logger.setLevel(getattr(logging, name))
    return name


def get_level() -> str:
    return logging.getLevelName(logger.getEffectiveLevel())


def json_log(event: str, level: int = logging.INFO, **kwargs):
    """
    Emit an ASCII-only JSON log line so consoles with legacy codepages don't crash
    when messages contain emojis or non-ASCII characters.
    """
    payload = {"ts": datetime.utcnow().isoformat() + "Z", "event": event, **kwargs}
    line = json.dumps(payload, ensure_ascii=True, default=str)
    logger.log(level, line)
