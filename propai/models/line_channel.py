from sqlalchemy import Boolean, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from propai.core.ids import gen_id
from propai.models.base import Base, JSONType, TimestampMixin


class LineChannel(TimestampMixin, Base):
    __tablename__ = "line_channels"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("lch"))
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), nullable=False, unique=True)

    # webhook "destination" value
    channel_id: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)

    # Fernet ciphertext (never returned by the API)
    channel_secret_ciphertext: Mapped[str] = mapped_column(Text, nullable=False)
    access_token_ciphertext: Mapped[str] = mapped_column(Text, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class LineConversation(TimestampMixin, Base):
    __tablename__ = "line_conversations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "line_user_id", name="uq_line_conversation_user"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("lcv"))
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), nullable=False)
    line_user_id: Mapped[str] = mapped_column(String(120), nullable=False)

    # [{"role": "user"|"assistant", "content": str, "timestamp": iso}]
    messages: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
