"""Logging setup shared by the CLI and the pipeline modules."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(*, level: int = logging.INFO, force: bool = False) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT, force=force)
    # requests/urllib3 재시도 로그는 verbose 모드에서만 본다.
    if level > logging.DEBUG:
        logging.getLogger("urllib3").setLevel(logging.WARNING)
