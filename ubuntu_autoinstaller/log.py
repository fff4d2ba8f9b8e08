"""Process logging setup.

Build jobs keep their own user-facing log lines (see builds/models.py);
this module only wires the standard library logger used by the service
itself.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: str = "INFO", rich: bool = False) -> None:
    """Configure the root logger once.

    Args:
        level: Logging level name.
        rich: Render records with Rich (used by the CLI).
    """
    handler: logging.Handler
    if rich:
        handler = RichHandler(
            console=Console(stderr=True), show_path=False, rich_tracebacks=True
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logging.basicConfig(level=level, handlers=[handler], force=True)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


__all__ = ["LOG_FORMAT", "configure_logging"]
