from datetime import datetime

from sqlalchemy import Float, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from propai.core.ids import gen_id
from propai.models.base import Base, TimestampMixin

ACTIVE_STATUSES = ("validating", "in_progress", "finalizing")
# a job in "cancelling" still blocks new submissions
NON_TERMINAL_STATUSES = ACTIVE_STATUSES + ("cancelling",)
TERMINAL_STATUSES = ("completed", "failed", "expired", "cancelled")
BATCH_STATUSES = NON_TERMINAL_STATUSES + TERMINAL_STATUSES

_NON_TERMINAL_SQL = "status IN ('validating', 'in_progress', 'finalizing', 'cancelling')"


class BatchGeneration(TimestampMixin, Base):
    """
    Local record of one external batch inference job.

    Source of truth for the job lifecycle; reconciled against the external job by polling.
    Terminal rows are never modified again except for the result-application markers.
    """
    __tablename__ = "batch_generations"
    __table_args__ = (
        # at most one non-terminal job per tenant, enforced by the store as well as by Submit
        Index(
            "uq_batch_generations_one_open_per_tenant",
            "tenant_id",
            unique=True,
            postgresql_where=text(_NON_TERMINAL_SQL),
            sqlite_where=text(_NON_TERMINAL_SQL),
        ),
        Index("ix_batch_generations_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("bgn"))
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), nullable=False)

    # external identifiers
    batch_id: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    input_file_id: Mapped[str] = mapped_column(String(120), nullable=False)
    output_file_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    error_file_id: Mapped[str | None] = mapped_column(String(120), nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="validating")

    total_requests: Mapped[int] = mapped_column(Integer, nullable=False)
    completed_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    estimated_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    actual_cost: Mapped[float | None] = mapped_column(Float, nullable=True)

    # set once by result application; a second application returns these counts
    results_applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    applied_success_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    applied_error_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    applied_total_results: Mapped[int | None] = mapped_column(Integer, nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
