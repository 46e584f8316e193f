from __future__ import annotations

import logging

from pod_pipeline.config import settings

_NOISY_LOGGERS = ("httpx", "httpcore", "openai")


def configure_logging(level: str | None = None) -> None:
    root = logging.getLogger()
    if getattr(root, "_pod_pipeline_configured", False):
        return
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    root._pod_pipeline_configured = True  # type: ignore[attr-defined]
