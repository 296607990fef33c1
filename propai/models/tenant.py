from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from propai.core.ids import gen_id
from propai.models.base import Base, TimestampMixin


class Tenant(TimestampMixin, Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("tnt"))

    # identity at the external auth provider; immutable after signup
    auth_user_id: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    company_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
