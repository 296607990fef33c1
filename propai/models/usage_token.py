from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from propai.core.ids import gen_id
from propai.models.base import Base, TimestampMixin


class UsageToken(TimestampMixin, Base):
    __tablename__ = "usage_tokens"
    __table_args__ = (
        CheckConstraint("tokens_used >= 0", name="ck_usage_tokens_used_non_negative"),
        CheckConstraint("additional_tokens >= 0", name="ck_usage_tokens_additional_non_negative"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("utk"))
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), nullable=False, unique=True)

    tokens_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tokens_limit: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # purchased top-ups
    additional_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    reset_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    @property
    def remaining(self) -> int:
        return max(0, self.tokens_limit + self.additional_tokens - self.tokens_used)
