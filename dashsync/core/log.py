import logging
from logging.handlers import RotatingFileHandler

from .config import Settings, settings

_MARK = "_dashsync_handler"


def configure_logging(s: Settings = settings) -> None:
    logger = logging.getLogger()
    logger.setLevel(s.log_level.upper())

    # Called from every app lifespan; replace what an earlier call installed
    for h in list(logger.handlers):
        if getattr(h, _MARK, False):
            logger.removeHandler(h)
            h.close()

    fmt = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s - %(message)s"
    )

    # Console
    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    setattr(ch, _MARK, True)
    logger.addHandler(ch)

    # Rotating file
    if s.log_file:
        fh = RotatingFileHandler(
            s.log_file, maxBytes=2_000_000, backupCount=5
        )
        fh.setFormatter(fmt)
        setattr(fh, _MARK, True)
        logger.addHandler(fh)

    # Silence noisy httpx request logging (poll ticks hit the backend constantly)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
