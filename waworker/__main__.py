"""Executable entrypoint for the WhatsApp session worker."""

from __future__ import annotations

import logging
import os
from logging import StreamHandler

import uvicorn


def _init_logging() -> None:
    level_name = (os.getenv("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)

    for logger_name in ("uvicorn", "uvicorn.access"):
        lg = logging.getLogger(logger_name)
        lg.setLevel(level)
        if not lg.handlers:
            handler = StreamHandler()
            handler.setFormatter(logging.Formatter(fmt))
            lg.addHandler(handler)


def main() -> None:
    _init_logging()
    port = int(os.getenv("WAWORKER_PORT", "9002"))
    uvicorn.run(
        "waworker.api:create_app",
        host="0.0.0.0",
        port=port,
        factory=True,
        workers=1,
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
