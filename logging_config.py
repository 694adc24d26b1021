import logging
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - [%(levelname)-7s] - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configures the root logger with a single stdout handler."""
    root = logging.getLogger()
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    logging.getLogger(__name__).debug("Logging configured at %s", level)
