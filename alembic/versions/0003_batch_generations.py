from alembic import op
import sqlalchemy as sa

revision = "0003_batch_generations"
down_revision = "0002_properties"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "batch_generations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),

        sa.Column("batch_id", sa.String(length=120), nullable=False),
        sa.Column("input_file_id", sa.String(length=120), nullable=False),
        sa.Column("output_file_id", sa.String(length=120), nullable=True),
        sa.Column("error_file_id", sa.String(length=120), nullable=True),

        sa.Column("status", sa.String(length=20), nullable=False, server_default="validating"),

        sa.Column("total_requests", sa.Integer(), nullable=False),
        sa.Column("completed_requests", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_requests", sa.Integer(), nullable=False, server_default="0"),

        sa.Column("estimated_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("estimated_cost", sa.Float(), nullable=False, server_default="0"),
        sa.Column("actual_cost", sa.Float(), nullable=True),

        sa.Column("results_applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("applied_success_count", sa.Integer(), nullable=True),
        sa.Column("applied_error_count", sa.Integer(), nullable=True),
        sa.Column("applied_total_results", sa.Integer(), nullable=True),

        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),

        sa.UniqueConstraint("batch_id", name="uq_batch_generations_batch_id"),
    )

    op.create_index("ix_batch_generations_tenant_created", "batch_generations", ["tenant_id", "created_at"])
    # one open job per tenant
    op.create_index(
        "uq_batch_generations_one_open_per_tenant",
        "batch_generations",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('validating', 'in_progress', 'finalizing', 'cancelling')"),
    )


def downgrade():
    op.drop_index("uq_batch_generations_one_open_per_tenant", table_name="batch_generations")
    op.drop_index("ix_batch_generations_tenant_created", table_name="batch_generations")
    op.drop_table("batch_generations")
