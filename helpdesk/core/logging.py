from __future__ import annotations

import logging
import sys

from helpdesk.core.config import get_settings


_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
# Third-party loggers that are noisy at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore", "arq.worker")


def configure_logging(level: str | None = None) -> None:
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    if not any(getattr(handler, "_helpdesk", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._helpdesk = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(resolved)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root.level))
