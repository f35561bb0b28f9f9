# chatrelay package init
import logging
import os


def _configure_logging() -> None:
    level_name = (os.getenv("CHATRELAY_LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("chatrelay")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[CHATRELAY][%(levelname)s] %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(level)

    streams_level_name = (os.getenv("CHATRELAY_STREAMS_LOG_LEVEL") or level_name).upper()
    streams_level = getattr(logging, streams_level_name, level)
    logging.getLogger("chatrelay.streams").setLevel(streams_level)


_configure_logging()
