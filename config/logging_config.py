import logging
import os

class ColorFormatter(logging.Formatter):
    """Custom formatter that colors messages by level."""
    COLORS = {
        logging.DEBUG: "\033[36m",   # Cyan
        logging.INFO: "\033[32m",    # Green
        logging.WARNING: "\033[33m", # Yellow
        logging.ERROR: "\033[31m",   # Red
        logging.CRITICAL: "\033[41m" # Red background
    }

    RESET = "\033[0m"

    def format(self, record):
        color = self.COLORS.get(record.levelno, self.RESET)
        message = super().format(record)
        return f"{color}{message}{self.RESET}"


def _stream_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(
        ColorFormatter("%(asctime)s [%(levelname)s] %(message)s")
    )
    return handler

def setup_logging():
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()

    # DEBUG LOGGER
    debug_logger = logging.getLogger("debug_logger")
    debug_logger.setLevel(logging.DEBUG)
    debug_logger.propagate = False

    # INFO LOGGER
    info_logger = logging.getLogger("info_logger")
    info_logger.setLevel(logging.INFO)
    info_logger.propagate = False

    # create_app may run more than once per process (tests, reloads)
    if debug_logger.handlers or info_logger.handlers:
        return

    if log_level == "DEBUG":
        debug_logger.addHandler(_stream_handler(logging.DEBUG))
        info_logger.addHandler(_stream_handler(logging.DEBUG))
    else:
        info_logger.addHandler(_stream_handler(logging.INFO))
