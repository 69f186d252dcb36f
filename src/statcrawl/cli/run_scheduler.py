import asyncio
import sys

import click
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from statcrawl.main.config import get_settings, set_settings
from statcrawl.main.exceptions import ConfigurationError, LockStoreError
from statcrawl.main.logging import get_logger
from statcrawl.scheduler.runner import run_scheduler

logger = get_logger(__name__)


@click.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Job configuration YAML (overrides SCHEDULER_CONFIG_PATH)",
)
@click.option(
    "--run-once",
    is_flag=True,
    default=False,
    help="Run every enabled job once in configured order, then exit",
)
@click.option(
    "--lock-backend",
    type=click.Choice(["postgres", "redis", "memory"]),
    default=None,
    help="Where job locks are held (overrides LOCK_BACKEND)",
)
def main(config_path, run_once, lock_backend):
    """Run the crawl scheduler until SIGINT/SIGTERM."""
    try:
        settings = get_settings()
    except ValidationError as e:
        logger.error(f"Invalid settings: {e}")
        sys.exit(1)

    overrides = {}
    if config_path:
        overrides["scheduler_config_path"] = config_path
    if lock_backend:
        overrides["lock_backend"] = lock_backend
    if overrides:
        settings = settings.model_copy(update=overrides)
        set_settings(settings)

    try:
        asyncio.run(run_scheduler(settings, run_once=run_once))
    except (ConfigurationError, LockStoreError) as e:
        logger.error(f"Cannot start scheduler: {e}")
        sys.exit(1)
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Cannot connect to the database: {e}")
        sys.exit(1)

    logger.info("Scheduler exited cleanly")


if __name__ == "__main__":
    main()
