import logging
import logging.handlers
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] %(message)s"
LOG_FILE = "trackprep.log"

# marks the handlers installed here so a second app in the same process replaces them
_OWNED = "_trackprep_handler"


def _own(handler: logging.Handler) -> logging.Handler:
    setattr(handler, _OWNED, True)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def setup_logging(config) -> logging.Logger:
    """Configure the ``trackprep`` logger from a :class:`PipelineConfig`.

    Records go to stderr, and to a rotating ``trackprep.log`` under
    ``config.log_dir`` unless running in debug mode or ``log_dir`` is empty.
    Records still propagate, so pytest's caplog and an embedding app see them.
    """
    logger = logging.getLogger("trackprep")
    level = logging.DEBUG if config.debug else logging.getLevelName(config.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logger.setLevel(level)

    for handler in [h for h in logger.handlers if getattr(h, _OWNED, False)]:
        logger.removeHandler(handler)
        handler.close()

    logger.addHandler(_own(logging.StreamHandler()))
    if config.log_dir and not config.debug:
        try:
            logs_dir = Path(config.log_dir)
            logs_dir.mkdir(parents=True, exist_ok=True)
            logger.addHandler(_own(logging.handlers.RotatingFileHandler(
                logs_dir / LOG_FILE, maxBytes=10 * 1024 * 1024, backupCount=5
            )))
        except OSError as e:
            logger.warning("Could not create log file in %s, using console only: %s", config.log_dir, e)

    logging.getLogger("werkzeug").setLevel(logging.INFO if config.debug else logging.WARNING)
    return logger
