"""
Ordered schema migrations tracked in the ``_migrations`` ledger.

Each migration is a named function receiving an alembic ``Operations``
object. The runner applies, in order, every migration without a successful
ledger entry. A migration that raises is rolled back, recorded as failed
and the remaining migrations still run; the next run retries it.
A successful entry is never overwritten.
"""

import logging
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy.ext.asyncio import AsyncConnection

from renderqueue.constants import JobStatus
from renderqueue.db.connection import Database
from renderqueue.db.models import JSONType, MigrationRecord, utcnow

logger = logging.getLogger(__name__)

LEDGER = MigrationRecord.__table__

# Key of the Postgres advisory lock serializing migration runs
MIGRATION_LOCK_ID = 0x72716D67


@dataclass(frozen=True)
class Migration:
    """One named schema step."""

    name: str
    upgrade: Callable[[Operations], None]


@dataclass
class MigrationReport:
    """Outcome of one migration run."""

    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def _initial_schema(op: Operations) -> None:
    op.create_table(
        "jobs",
        sa.Column("uuid", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("status", sa.String(64), nullable=False),
        sa.Column("progress", sa.Float, nullable=False, server_default="0"),
        sa.Column("request", JSONType, nullable=False),
        sa.Column("result", JSONType, nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("webhook_url", sa.Text, nullable=True),
        sa.Column("webhook_key", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.PrimaryKeyConstraint("uuid"),
    )
    op.create_index("ix_jobs_status", "jobs", ["status"])


def _workflow_and_retry(op: Operations) -> None:
    op.add_column("jobs", sa.Column("workflow", sa.String(64), nullable=True))
    op.add_column(
        "jobs",
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
    )
    op.add_column("jobs", sa.Column("last_retry", sa.DateTime, nullable=True))
    op.add_column("jobs", sa.Column("lease_owner", sa.String(255), nullable=True))
    op.add_column("jobs", sa.Column("updated_at", sa.DateTime, nullable=True))

    # Leasing scans waiting jobs oldest first
    op.create_index("ix_jobs_status_created", "jobs", ["status", "created_at"])
    op.create_index("ix_jobs_retry", "jobs", ["retry_count", "last_retry"])


def _completed_at(op: Operations) -> None:
    op.add_column("jobs", sa.Column("completed_at", sa.DateTime, nullable=True))

    jobs = sa.table(
        "jobs",
        sa.column("status", sa.String),
        sa.column("completed_at", sa.DateTime),
    )
    op.execute(
        jobs.update()
        .where(jobs.c.status == JobStatus.COMPLETED.value)
        .where(jobs.c.completed_at.is_(None))
        .values(completed_at=utcnow())
    )
    op.create_index("ix_jobs_completed_at", "jobs", ["completed_at"])


def _assets(op: Operations) -> None:
    op.create_table(
        "assets",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("name", sa.Text, nullable=True),
        sa.Column("source_url", sa.Text, nullable=False),
        sa.Column("example_prompt", sa.Text, nullable=True),
        sa.Column("min", sa.Float, nullable=False, server_default="1"),
        sa.Column("max", sa.Float, nullable=False, server_default="1"),
        sa.Column("local_path", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.CheckConstraint("kind IN ('model', 'lora')", name="ck_assets_kind"),
    )
    op.create_index("ix_assets_kind", "assets", ["kind"])

    op.create_table(
        "assets_images",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "asset_id",
            sa.Integer,
            sa.ForeignKey("assets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("url", sa.Text, nullable=False),
        sa.Column("is_nsfw", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("width", sa.Integer, nullable=True),
        sa.Column("height", sa.Integer, nullable=True),
        sa.Column("meta", JSONType, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_assets_images_asset_id", "assets_images", ["asset_id"])


MIGRATIONS: tuple[Migration, ...] = (
    Migration("001_initial_schema", _initial_schema),
    Migration("002_workflow_and_retry", _workflow_and_retry),
    Migration("003_completed_at", _completed_at),
    Migration("004_assets", _assets),
)


def _apply(sync_connection: sa.Connection, migration: Migration) -> None:
    context = MigrationContext.configure(sync_connection)
    migration.upgrade(Operations(context))


@asynccontextmanager
async def _locked(database: Database) -> AsyncIterator[AsyncConnection]:
    """
    Open a transaction holding the migration lock, with the ledger in place.

    Runners started together (API and workers share a store) queue on this
    lock, so each one re-reads the ledger only after the previous runner
    committed. Postgres uses a transaction-scoped advisory lock; SQLite
    takes its database write lock at BEGIN.
    """
    async with database.engine.connect() as conn:
        if database.dialect == "sqlite":
            conn = await conn.execution_options(sqlite_begin="IMMEDIATE")
        async with conn.begin():
            if database.dialect == "postgresql":
                await conn.execute(
                    sa.select(sa.func.pg_advisory_xact_lock(MIGRATION_LOCK_ID))
                )
            await conn.run_sync(LEDGER.create, checkfirst=True)
            yield conn


async def _succeeded(conn: AsyncConnection, name: str) -> bool:
    result = await conn.execute(
        sa.select(LEDGER.c.id).where(LEDGER.c.name == name, LEDGER.c.success.is_(True))
    )
    return result.first() is not None


async def _record(
    conn: AsyncConnection,
    name: str,
    success: bool,
    error: str | None = None,
) -> None:
    """
    Write the ledger entry for one attempt.

    Only a failed entry is ever replaced; once a migration has succeeded its
    entry is final and a later failure report for it is dropped.
    """
    if await _succeeded(conn, name):
        if not success:
            logger.warning(
                "Ignoring failure for a migration already recorded as applied",
                extra={"migration": name, "error": error},
            )
        return

    await conn.execute(
        sa.delete(LEDGER).where(LEDGER.c.name == name, LEDGER.c.success.is_(False))
    )
    await conn.execute(
        sa.insert(LEDGER).values(
            name=name,
            applied_at=utcnow(),
            success=success,
            error=error,
        )
    )


async def get_applied(database: Database) -> set[str]:
    """Names of migrations with a successful ledger entry."""
    async with _locked(database) as conn:
        result = await conn.execute(
            sa.select(LEDGER.c.name).where(LEDGER.c.success.is_(True))
        )
        return set(result.scalars().all())


async def run_migrations(
    database: Database,
    migrations: Sequence[Migration] = MIGRATIONS,
) -> MigrationReport:
    """
    Apply every migration that has not yet succeeded.

    Each migration runs in its own locked transaction and checks the ledger
    again inside it, so concurrent runners apply a migration at most once.

    Args:
        database: The database to migrate.
        migrations: Ordered migration sequence.

    Returns:
        MigrationReport listing applied, skipped and failed migrations.
    """
    report = MigrationReport()

    for migration in migrations:
        try:
            async with _locked(database) as conn:
                already_applied = await _succeeded(conn, migration.name)
                if not already_applied:
                    await conn.run_sync(_apply, migration)
                    await _record(conn, migration.name, success=True)
        except Exception as e:
            logger.exception(
                "Migration failed",
                extra={"migration": migration.name, "error": str(e)},
            )
            async with _locked(database) as conn:
                await _record(conn, migration.name, success=False, error=str(e))
            report.failed[migration.name] = str(e)
            continue

        if already_applied:
            report.skipped.append(migration.name)
            continue

        logger.info("Applied migration", extra={"migration": migration.name})
        report.applied.append(migration.name)

    logger.info(
        "Migrations finished",
        extra={
            "applied": len(report.applied),
            "skipped": len(report.skipped),
            "failed": len(report.failed),
        },
    )
    return report
