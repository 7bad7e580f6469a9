"""
SQLAlchemy database models.
Defines the jobs table, the asset catalogue and the migration ledger.
"""

from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    ColumnElement,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    ForeignKey,
    Uuid,
    and_,
    false,
    or_,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from renderqueue.constants import (
    BACKOFF_BASE_MINUTES,
    BACKOFF_MAX_EXPONENT,
    READY_STATUS_PREFIX,
    TERMINAL_STATUSES,
    JobStatus,
)

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def is_ready_status(status: str) -> bool:
    """A status is ready iff it is "pending" or a "ready-for-*" waiting state."""
    return status == JobStatus.PENDING or status.startswith(READY_STATUS_PREFIX)


def is_terminal_status(status: str) -> bool:
    return status in TERMINAL_STATUSES


def backoff_delay(retry_count: int) -> timedelta:
    """
    Delay before a job that has failed ``retry_count`` times becomes due.

    The exponent is capped at BACKOFF_MAX_EXPONENT so the delay stays
    representable; both readiness projections go through this function.
    """
    exponent = min(retry_count, BACKOFF_MAX_EXPONENT)
    return timedelta(minutes=BACKOFF_BASE_MINUTES * 2**exponent)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing one unit of queued work.

    This is the authoritative source of truth for job state. ``ready`` and
    ``ready_at`` are projections of other columns and are never stored:
    ``ready`` is evaluated in SQL through the hybrid expression and
    ``ready_at <= now`` through :meth:`due_clause`.

    Key constraints:
    - uuid, workflow, request and created_at never change after insert
    - a non-null lease_owner marks the job as held by one worker
    - terminal jobs are immutable apart from completed_at
    """

    __tablename__ = "jobs"

    uuid: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    workflow: Mapped[str] = mapped_column(String(64), nullable=False)

    # State
    status: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default=JobStatus.PENDING,
        index=True,
    )
    progress: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    # Payloads
    request: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Webhook target, fixed at creation
    webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_key: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Retry tracking
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retry: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Lease management
    lease_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
        default=utcnow,
        onupdate=utcnow,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    @hybrid_property
    def ready(self) -> bool:
        """Whether the job is waiting to be leased."""
        return is_ready_status(self.status)

    @ready.inplace.expression
    @classmethod
    def _ready_expression(cls) -> ColumnElement[bool]:
        return or_(
            cls.status == JobStatus.PENDING,
            cls.status.like(f"{READY_STATUS_PREFIX}%"),
        )

    @property
    def ready_at(self) -> datetime:
        """When the job becomes due: creation time, or the backoff after its last failure."""
        if self.retry_count == 0 or self.last_retry is None:
            return self.created_at
        return self.last_retry + backoff_delay(self.retry_count)

    @property
    def is_terminal(self) -> bool:
        return is_terminal_status(self.status)

    @classmethod
    def due_clause(cls, now: datetime) -> ColumnElement[bool]:
        """
        SQL form of ``ready_at <= now``.

        The exponent differs per row, so instead of date arithmetic in SQL each
        possible retry count is compared against its own precomputed cutoff.
        Counts above BACKOFF_MAX_EXPONENT share the capped cutoff, matching
        :func:`backoff_delay`.
        """
        branches = [
            and_(
                or_(cls.retry_count == 0, cls.last_retry.is_(None)),
                cls.created_at <= now,
            )
        ]
        for retry_count in range(1, BACKOFF_MAX_EXPONENT + 1):
            branches.append(
                and_(
                    cls.retry_count == retry_count,
                    cls.last_retry <= now - backoff_delay(retry_count),
                )
            )
        branches.append(
            and_(
                cls.retry_count > BACKOFF_MAX_EXPONENT,
                cls.last_retry <= now - backoff_delay(BACKOFF_MAX_EXPONENT),
            )
        )
        return or_(*branches)

    def __repr__(self) -> str:
        return (
            f"Job(uuid={self.uuid}, workflow={self.workflow}, "
            f"status={self.status}, retry_count={self.retry_count})"
        )


class MigrationRecord(Base):
    """Ledger entry for one named schema migration."""

    __tablename__ = "_migrations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    applied_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"MigrationRecord(name={self.name}, success={self.success})"


class Asset(Base):
    """
    A downloaded model or LoRA file.

    Written once by the download processor after the file is on disk;
    ``min_weight``/``max_weight`` are the suggested prompt weight range.
    """

    __tablename__ = "assets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_url: Mapped[str] = mapped_column(Text, nullable=False)
    example_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    min_weight: Mapped[float] = mapped_column("min", Float, nullable=False, default=1.0)
    max_weight: Mapped[float] = mapped_column("max", Float, nullable=False, default=1.0)
    local_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    images: Mapped[list["AssetImage"]] = relationship(
        back_populates="asset",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="AssetImage.id",
    )

    def __repr__(self) -> str:
        return f"Asset(id={self.id}, kind={self.kind}, name={self.name})"


class AssetImage(Base):
    """Example image metadata published with an asset."""

    __tablename__ = "assets_images"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    asset_id: Mapped[int] = mapped_column(
        ForeignKey("assets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    is_nsfw: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    meta: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    asset: Mapped[Asset] = relationship(back_populates="images")
