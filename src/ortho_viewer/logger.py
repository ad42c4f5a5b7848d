"""Package logger: console records tagged with the view they concern."""

from __future__ import annotations

import logging

_LOGGER_NAME = "ortho_viewer"


class _ViewFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "view"):
            record.view = "-"
        return True


def get_logger(name: str) -> logging.Logger:
    """Return a logger configured for console output.

    Parameters
    ----------
    name : str
        Module name, typically ``__name__``.
    """
    base = logging.getLogger(_LOGGER_NAME)
    if not base.handlers:
        base.setLevel(logging.INFO)
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        formatter = logging.Formatter(
            "[%(asctime)s] [%(levelname)s] %(module)s view=%(view)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)
        handler.addFilter(_ViewFilter())
        base.addHandler(handler)
        base.propagate = False
    if name == _LOGGER_NAME or name.startswith(_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{_LOGGER_NAME}.{name}")

