"""add user referral code

Revision ID: 8a4f2c9d1e07
Revises: 5d1c0a7e3b21
Create Date: 2026-10-17 14:00:00
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "8a4f2c9d1e07"
down_revision = "5d1c0a7e3b21"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("users") as batch_op:
        batch_op.add_column(sa.Column("referred_by_code", sa.String(length=64), nullable=True))


def downgrade():
    with op.batch_alter_table("users") as batch_op:
        batch_op.drop_column("referred_by_code")
