import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(log_level: str = "INFO") -> None:
    root = logging.getLogger()
    level = getattr(logging, log_level.upper(), logging.INFO)
    root.setLevel(level)

    # uvicorn --reload imports main twice
    for handler in root.handlers:
        if getattr(handler, "_facemosaic", False):
            handler.setLevel(level)
            return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    handler.setLevel(level)
    handler._facemosaic = True
    root.addHandler(handler)

    for noisy in ("insightface", "onnxruntime", "libav"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
