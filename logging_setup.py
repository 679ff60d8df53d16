import logging
import sys
from typing import Union

_APP_LOGGERS = (
    "__main__",
    "main",
    "database",
    "repository",
    "analytics",
    "identity",
    "api_client",
    "data_cache",
    "tracker_client",
)


class _ThirdPartyNoiseFilter(logging.Filter):
    """Keep our own logs, only let other libraries through at WARNING+."""

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name
        if name.split(".", 1)[0] in _APP_LOGGERS:
            return True
        if name == "uvicorn.access":
            # request logging middleware already covers this
            return False
        return record.levelno >= logging.WARNING


def setup_logging(level: Union[int, str] = logging.INFO) -> None:
    """
    Install one stderr handler on the root logger.

    Safe to call more than once; existing handlers are replaced.
    """
    root = logging.getLogger()
    root.setLevel(level)

    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    handler.addFilter(_ThirdPartyNoiseFilter())
    root.addHandler(handler)

    logging.captureWarnings(True)
