from alembic import op
import sqlalchemy as sa

revision = "0002_properties"
down_revision = "0001_tenants_api_keys"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "properties",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),

        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("address", sa.String(length=200), nullable=False),
        sa.Column("property_type", sa.String(length=50), nullable=False),
        sa.Column("price", sa.Float(), nullable=True),
        sa.Column("size", sa.Float(), nullable=True),
        sa.Column("rooms", sa.Float(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("ai_description", sa.Text(), nullable=True),

        sa.Column("batch_job_id", sa.String(length=120), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),

        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
    )

    op.create_index("ix_properties_tenant_created", "properties", ["tenant_id", "created_at"])
    op.create_index("ix_properties_batch_job_id", "properties", ["batch_job_id"])


def downgrade():
    op.drop_index("ix_properties_batch_job_id", table_name="properties")
    op.drop_index("ix_properties_tenant_created", table_name="properties")
    op.drop_table("properties")
