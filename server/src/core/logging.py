import logging
from typing import Any

_PACKAGE_PREFIX = "server.src."


def get_logger(name_or_obj: Any) -> logging.Logger:
    """Return a logger named after the calling module, without the
    "server.src." prefix, so `--log services.aggregator:DEBUG` style
    overrides stay short.

    Accept either a module/string or an object with __name__.
    """
    if hasattr(name_or_obj, "__name__"):
        name = getattr(name_or_obj, "__name__")
    else:
        name = str(name_or_obj)

    if name.startswith(_PACKAGE_PREFIX):
        name = name[len(_PACKAGE_PREFIX):]

    return logging.getLogger(name)
