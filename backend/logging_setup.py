# backend/logging_setup.py
import logging

from settings import get_settings


def setup_logging() -> None:
    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        "%Y-%m-%d %H:%M:%S",
    )
    level = getattr(logging, str(get_settings().log_level).upper(), logging.INFO)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    # httpx logs every PostgREST round trip at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
