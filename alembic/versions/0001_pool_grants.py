"""pool grants and disbursement checkpoints

Revision ID: 0001_pool_grants
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0001_pool_grants"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE SCHEMA IF NOT EXISTS app;")
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.pool_grants (
            pool_id text NOT NULL,
            state text NOT NULL,
            sender_wallet text NOT NULL,
            receiver_wallet text NOT NULL,
            sender_wallet_id text,
            receiver_wallet_id text,
            auth_server text,
            total_amount bigint NOT NULL,
            asset_code text,
            asset_scale integer,
            disbursed_amount bigint DEFAULT 0 NOT NULL,
            callback_uri text,
            client_nonce text,
            finish_nonce text,
            interact_redirect text,
            continue_uri text,
            continue_token text,
            interact_ref text,
            access_token text,
            last_error text,
            created_at timestamp with time zone DEFAULT now() NOT NULL,
            updated_at timestamp with time zone DEFAULT now() NOT NULL,
            CONSTRAINT pool_grants_pkey PRIMARY KEY (pool_id),
            CONSTRAINT pool_grants_state_check CHECK (
                state IN ('REQUESTED', 'PENDING_AUTH', 'AUTHORIZED', 'FINALIZED', 'EXPIRED', 'FAILED')
            ),
            CONSTRAINT pool_grants_amount_check CHECK (total_amount > 0),
            CONSTRAINT pool_grants_spend_check CHECK (disbursed_amount >= 0 AND disbursed_amount <= total_amount),
            CONSTRAINT pool_grants_finalized_token_check CHECK (state <> 'FINALIZED' OR access_token IS NOT NULL)
        );
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.pool_disbursements (
            pool_id text NOT NULL REFERENCES app.pool_grants (pool_id) ON DELETE CASCADE,
            transaction_id text NOT NULL,
            recipient_wallet text NOT NULL,
            recipient_label text,
            amount bigint NOT NULL,
            request_hash text NOT NULL,
            status text NOT NULL,
            reserved boolean DEFAULT false NOT NULL,
            incoming_payment_id text,
            quote_id text,
            outgoing_payment_id text,
            last_error text,
            created_at timestamp with time zone DEFAULT now() NOT NULL,
            updated_at timestamp with time zone DEFAULT now() NOT NULL,
            CONSTRAINT pool_disbursements_pkey PRIMARY KEY (pool_id, transaction_id),
            CONSTRAINT pool_disbursements_status_check CHECK (
                status IN ('STARTED', 'INCOMING_CREATED', 'QUOTED', 'OUTGOING_PENDING', 'COMPLETED', 'FAILED')
            ),
            CONSTRAINT pool_disbursements_amount_check CHECK (amount > 0)
        );
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_pool_disbursements_status ON app.pool_disbursements USING btree (status, updated_at);"
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS app.pool_disbursements;")
    op.execute("DROP TABLE IF EXISTS app.pool_grants;")
