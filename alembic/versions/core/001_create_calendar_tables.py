"""create_calendar_tables

Revision ID: core_001
Revises:
Create Date: 2026-10-19 00:00:00.000000

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
        CREATE TABLE IF NOT EXISTS calendar_feeds (
            id TEXT PRIMARY KEY,
            calendar_id TEXT NOT NULL,
            name TEXT NOT NULL DEFAULT '',
            enabled BOOLEAN NOT NULL DEFAULT true,
            sync_token TEXT,
            last_sync_at TIMESTAMPTZ,
            last_sync_error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            feed_id TEXT NOT NULL REFERENCES calendar_feeds (id) ON DELETE CASCADE,
            external_event_id TEXT NOT NULL,
            title TEXT NOT NULL DEFAULT 'Untitled Event',
            description TEXT,
            location TEXT,
            starts_at TIMESTAMPTZ NOT NULL,
            ends_at TIMESTAMPTZ NOT NULL,
            all_day BOOLEAN NOT NULL DEFAULT false,
            is_recurring BOOLEAN NOT NULL DEFAULT false,
            is_master BOOLEAN NOT NULL DEFAULT false,
            recurrence_rule TEXT,
            master_event_id UUID REFERENCES calendar_events (id) ON DELETE CASCADE,
            recurring_event_id TEXT,
            status TEXT NOT NULL DEFAULT 'busy',
            sequence INTEGER NOT NULL DEFAULT 0,
            organizer JSONB,
            attendees JSONB NOT NULL DEFAULT '[]',
            created_at_remote TIMESTAMPTZ,
            modified_at_remote TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT calendar_events_master_has_no_parent
                CHECK (NOT is_master OR master_event_id IS NULL),
            CONSTRAINT calendar_events_time_order CHECK (ends_at >= starts_at)
        )
    """)

    # One master and one non-master slot per external id; the reconciler
    # keeps at most one of the two occupied.
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS ix_calendar_events_master_identity
        ON calendar_events (feed_id, external_event_id)
        WHERE is_master
    """)
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS ix_calendar_events_identity
        ON calendar_events (feed_id, external_event_id)
        WHERE NOT is_master
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_calendar_events_master_event_id
        ON calendar_events (master_event_id)
        WHERE master_event_id IS NOT NULL
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_calendar_events_feed_starts_at
        ON calendar_events (feed_id, starts_at)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS calendar_events")
    op.execute("DROP TABLE IF EXISTS calendar_feeds")
