"""create_notification_tables

Revision ID: core_001
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS notification_log (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            subject_id UUID NOT NULL,
            kind TEXT NOT NULL,
            protocol_id UUID,
            window_bucket TIMESTAMPTZ NOT NULL,
            sent_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            metadata JSONB NOT NULL DEFAULT '{}',
            CONSTRAINT uq_notification_log_key_window
                UNIQUE NULLS NOT DISTINCT (subject_id, kind, protocol_id, window_bucket)
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_notification_log_lookup
        ON notification_log (subject_id, kind, sent_at DESC)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS failed_notification_queue (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            subject_id UUID NOT NULL,
            protocol_id UUID,
            kind TEXT NOT NULL,
            payload JSONB NOT NULL,
            error_code TEXT,
            error_message TEXT,
            error_category TEXT NOT NULL,
            retry_count INTEGER NOT NULL DEFAULT 0,
            correlation_id TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            resolved_at TIMESTAMPTZ,
            resolution_notes TEXT,
            CONSTRAINT chk_fnq_status
                CHECK (status IN ('pending', 'retrying', 'resolved', 'discarded')),
            CONSTRAINT chk_fnq_error_category
                CHECK (error_category IN (
                    'network_error', 'rate_limit', 'upstream_error', 'bad_request',
                    'invalid_chat', 'message_too_long', 'unknown'
                )),
            CONSTRAINT chk_fnq_retry_count CHECK (retry_count >= 0)
        )
    """)

    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_fnq_live_notification
        ON failed_notification_queue (subject_id, protocol_id, kind)
        NULLS NOT DISTINCT
        WHERE status IN ('pending', 'retrying')
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_fnq_status_created
        ON failed_notification_queue (status, created_at)
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_fnq_subject
        ON failed_notification_queue (subject_id, created_at DESC)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS failed_notification_queue")
    op.execute("DROP TABLE IF EXISTS notification_log")
