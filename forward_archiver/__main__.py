"""Entry point for the archiver.

Usage::

    python -m forward_archiver
"""

from __future__ import annotations

import asyncio

from .config import ArchiverConfig
from .logging import setup_logging
from .service import ArchiverService


def main() -> None:
    config = ArchiverConfig()
    setup_logging(json=config.log_json, level=config.log_level)
    service = ArchiverService(config)
    asyncio.run(service.run())


if __name__ == "__main__":
    main()
