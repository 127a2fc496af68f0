"""Process-wide logging setup shared by the API and the worker."""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_configured = False


def configure_logging(level: str = "INFO") -> None:
    """Install a root handler once; later calls only adjust the level."""
    global _configured
    root = logging.getLogger()
    if not _configured:
        logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
        _configured = True
    root.setLevel(level.upper())
