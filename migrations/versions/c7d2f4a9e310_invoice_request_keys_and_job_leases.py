"""invoice request keys and job leases

Revision ID: c7d2f4a9e310
Revises: a1c0e5b7d201
Create Date: 2026-10-19 14:30:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "c7d2f4a9e310"
down_revision = "a1c0e5b7d201"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("invoices") as batch:
        batch.add_column(sa.Column("description", sa.String(length=255), nullable=True))
        batch.add_column(sa.Column("request_key", sa.String(length=160), nullable=True))
        batch.create_unique_constraint("uq_invoices_request_key", ["request_key"])

    op.create_table(
        "job_runs",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("holder", sa.String(length=128), nullable=True),
        sa.Column("locked_at", sa.DateTime(), nullable=True),
        sa.Column("last_started_at", sa.DateTime(), nullable=True),
        sa.Column("last_finished_at", sa.DateTime(), nullable=True),
        sa.Column("last_status", sa.String(length=20), nullable=True),
    )


def downgrade():
    op.drop_table("job_runs")
    with op.batch_alter_table("invoices") as batch:
        batch.drop_constraint("uq_invoices_request_key", type_="unique")
        batch.drop_column("request_key")
        batch.drop_column("description")
