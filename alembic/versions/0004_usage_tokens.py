from alembic import op
import sqlalchemy as sa

revision = "0004_usage_tokens"
down_revision = "0003_batch_generations"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "usage_tokens",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),

        sa.Column("tokens_used", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("tokens_limit", sa.BigInteger(), nullable=False),
        sa.Column("additional_tokens", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("reset_date", sa.DateTime(timezone=True), nullable=False),

        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),

        sa.UniqueConstraint("tenant_id", name="uq_usage_tokens_tenant_id"),
        sa.CheckConstraint("tokens_used >= 0", name="ck_usage_tokens_used_non_negative"),
        sa.CheckConstraint("additional_tokens >= 0", name="ck_usage_tokens_additional_non_negative"),
    )
    op.create_index("ix_usage_tokens_reset_date", "usage_tokens", ["reset_date"])


def downgrade():
    op.drop_index("ix_usage_tokens_reset_date", table_name="usage_tokens")
    op.drop_table("usage_tokens")
