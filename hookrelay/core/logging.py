from __future__ import annotations

import logging
import sys

from hookrelay.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Install a single stream handler on the root logger; repeated calls only adjust the level.
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if any(getattr(handler, "_hookrelay", False) for handler in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler._hookrelay = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    # httpx logs every request at INFO; delivery logs already carry the outcome.
    logging.getLogger("httpx").setLevel(logging.WARNING)
