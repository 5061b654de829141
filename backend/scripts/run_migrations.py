"""Bring the remote store schema up to date before the session service starts.

``--check`` only reports revisions that have not been applied yet and exits
with status 3 when there are any, which lets a readiness gate refuse to route
traffic to a process whose ``users``/``user_courses``/``course_completions``
tables lag behind the code.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path
from typing import List, Optional

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from learnsync.logging_config import configure_logging

LOGGER = logging.getLogger("learnsync.migrations")
DATABASE_URL_ENV = "LEARNSYNC_DATABASE_URL"
BACKEND_ROOT = Path(__file__).resolve().parent.parent
EXIT_PENDING = 3


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Upgrade the learnsync schema once the database answers.")
    parser.add_argument("--revision", default=os.getenv("LEARNSYNC_MIGRATION_REVISION", "head"))
    parser.add_argument("--timeout", type=int, default=int(os.getenv("LEARNSYNC_MIGRATION_TIMEOUT", "60")))
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=float(os.getenv("LEARNSYNC_MIGRATION_POLL_INTERVAL", "3")),
    )
    parser.add_argument("--config", default=str(BACKEND_ROOT / "alembic.ini"), help="Path to alembic.ini.")
    parser.add_argument("--check", action="store_true", help="Report pending revisions without applying them.")
    return parser.parse_args(argv)


def get_alembic_config(config_path: str) -> Config:
    config = Config(config_path)
    config.set_main_option("script_location", str(BACKEND_ROOT / "alembic"))
    return config


def resolve_database_url(config: Config) -> str:
    """An explicit ``sqlalchemy.url`` wins; otherwise LEARNSYNC_DATABASE_URL is copied in."""
    url = config.get_main_option("sqlalchemy.url")
    if url:
        return url
    url = os.getenv(DATABASE_URL_ENV)
    if not url:
        raise RuntimeError(f"{DATABASE_URL_ENV} must be set before running migrations.")
    config.set_main_option("sqlalchemy.url", url)
    return url


def wait_for_database(database_url: str, *, timeout: int, poll_interval: float) -> None:
    engine = create_engine(database_url, pool_pre_ping=True)
    deadline = time.monotonic() + timeout
    attempts = 0
    try:
        while True:
            attempts += 1
            try:
                with engine.connect() as connection:
                    connection.execute(text("SELECT 1"))
            except OperationalError as exc:
                # Connection refused or DNS not ready: keep polling.
                if time.monotonic() >= deadline:
                    raise RuntimeError(
                        f"Database still unreachable after {attempts} attempt(s) in {timeout}s."
                    ) from exc
                LOGGER.warning("Database not ready (attempt %d): %s", attempts, exc)
                time.sleep(poll_interval)
            except SQLAlchemyError as exc:
                raise RuntimeError("Database rejected the readiness query.") from exc
            else:
                LOGGER.info("Database reachable after %d attempt(s)", attempts)
                return
    finally:
        engine.dispose()


def pending_revisions(config: Config, database_url: str) -> List[str]:
    """Revisions between the database's current head and the script head, oldest first."""
    script = ScriptDirectory.from_config(config)
    engine = create_engine(database_url)
    try:
        with engine.connect() as connection:
            current = MigrationContext.configure(connection).get_current_heads()
    finally:
        engine.dispose()
    upper = script.get_current_head()
    lower = current[0] if current else None
    if upper is None or upper == lower:
        return []
    return [rev.revision for rev in reversed(list(script.iterate_revisions(upper, lower)))]


def run_migrations(
    revision: str,
    *,
    timeout: int,
    poll_interval: float,
    config: Optional[Config] = None,
) -> None:
    config = config or get_alembic_config(str(BACKEND_ROOT / "alembic.ini"))
    database_url = resolve_database_url(config)
    wait_for_database(database_url, timeout=timeout, poll_interval=poll_interval)
    LOGGER.info("Upgrading schema to %s", revision)
    command.upgrade(config, revision)


def main(argv: Optional[list[str]] = None) -> int:
    configure_logging()
    args = parse_args(argv)
    config = get_alembic_config(args.config)
    try:
        if args.check:
            database_url = resolve_database_url(config)
            wait_for_database(database_url, timeout=args.timeout, poll_interval=args.poll_interval)
            pending = pending_revisions(config, database_url)
            if pending:
                LOGGER.warning("Pending migrations: %s", ", ".join(pending))
                return EXIT_PENDING
            LOGGER.info("Schema is current")
            return 0
        run_migrations(args.revision, timeout=args.timeout, poll_interval=args.poll_interval, config=config)
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Migration run failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
