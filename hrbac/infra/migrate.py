from __future__ import annotations

import os

import structlog
from alembic import command
from alembic.config import Config

from hrbac.infra.log import configure_logging

logger = structlog.get_logger(__name__)

ALEMBIC_CONFIG = os.getenv("ALEMBIC_CONFIG", "alembic.ini")


def run_upgrade_head() -> None:
    config = Config(ALEMBIC_CONFIG)
    logger.info("running schema migrations", config=ALEMBIC_CONFIG, target="head")
    command.upgrade(config, "head")


if __name__ == "__main__":
    configure_logging()
    run_upgrade_head()
