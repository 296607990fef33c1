from sqlalchemy import Float, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from propai.core.ids import gen_id
from propai.models.base import AuditMixin, Base


class Property(AuditMixin, Base):
    __tablename__ = "properties"
    __table_args__ = (
        Index("ix_properties_tenant_created", "tenant_id", "created_at"),
        Index("ix_properties_batch_job_id", "batch_job_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("prp"))
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), nullable=False)

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    address: Mapped[str] = mapped_column(String(200), nullable=False)
    property_type: Mapped[str] = mapped_column(String(50), nullable=False)

    price: Mapped[float | None] = mapped_column(Float, nullable=True)
    size: Mapped[float | None] = mapped_column(Float, nullable=True)
    rooms: Mapped[float | None] = mapped_column(Float, nullable=True)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    ai_description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # external batch id of the in-flight generation job; lookup pointer only,
    # BatchGeneration owns the lifecycle
    batch_job_id: Mapped[str | None] = mapped_column(String(120), nullable=True)

    # "draft" | "published" | "archived"
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
