"""grant id on pool grants, grant id and version on disbursement checkpoints

Revision ID: 0002_disbursement_grant_id
Revises: 0001_pool_grants
Create Date: 2026-10-19 12:00:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0002_disbursement_grant_id"
down_revision = "0001_pool_grants"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        "ALTER TABLE app.pool_grants ADD COLUMN IF NOT EXISTS grant_id text NOT NULL DEFAULT md5(random()::text);"
    )
    op.execute("ALTER TABLE app.pool_disbursements ADD COLUMN IF NOT EXISTS grant_id text;")
    op.execute("ALTER TABLE app.pool_disbursements ADD COLUMN IF NOT EXISTS version integer NOT NULL DEFAULT 1;")
    # existing reservations belong to the grant currently on the pool
    op.execute(
        """
        UPDATE app.pool_disbursements d
        SET grant_id = g.grant_id
        FROM app.pool_grants g
        WHERE g.pool_id = d.pool_id AND d.grant_id IS NULL;
        """
    )


def downgrade() -> None:
    op.execute("ALTER TABLE app.pool_disbursements DROP COLUMN IF EXISTS version;")
    op.execute("ALTER TABLE app.pool_disbursements DROP COLUMN IF EXISTS grant_id;")
    op.execute("ALTER TABLE app.pool_grants DROP COLUMN IF EXISTS grant_id;")
