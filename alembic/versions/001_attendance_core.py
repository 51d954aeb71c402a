"""Attendance core: campaigns, personas, events, QR codes, attendance, point history.

Only the columns the attendance and points services use; the CRM owns the
rest of the persona/campaign/event data.

Revision ID: 001_attendance_core
Revises:
Create Date: 2026-10-17
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_attendance_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Campaigns ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS campaigns (
            id BIGSERIAL PRIMARY KEY,
            name VARCHAR(160) NOT NULL,
            active BOOLEAN NOT NULL DEFAULT TRUE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- Personas ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS personas (
            id BIGSERIAL PRIMARY KEY,
            name VARCHAR(160) NOT NULL,
            phone VARCHAR(32) UNIQUE,
            universe_type VARCHAR(4) NOT NULL DEFAULT 'U1'
                CHECK (universe_type IN ('U1', 'U2', 'U3', 'U4')),
            is_leader BOOLEAN NOT NULL DEFAULT FALSE,
            loyalty_balance BIGINT NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_personas_universe ON personas(universe_type)")

    # --- Events ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS events (
            id BIGSERIAL PRIMARY KEY,
            campaign_id BIGINT NOT NULL REFERENCES campaigns(id) ON DELETE CASCADE,
            name VARCHAR(200) NOT NULL,
            active BOOLEAN NOT NULL DEFAULT TRUE,
            ended_at TIMESTAMPTZ,
            grace_period_hours INTEGER NOT NULL DEFAULT 1,
            auto_close_scheduled BOOLEAN NOT NULL DEFAULT FALSE,
            points_distribution_scheduled BOOLEAN NOT NULL DEFAULT FALSE,
            points_distributed BOOLEAN NOT NULL DEFAULT FALSE,
            bonus_points_for_attendee INTEGER NOT NULL DEFAULT 50,
            bonus_points_for_leader INTEGER NOT NULL DEFAULT 10,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_events_grace_non_negative CHECK (grace_period_hours >= 0),
            CONSTRAINT ck_events_bonus_non_negative
                CHECK (bonus_points_for_attendee >= 0 AND bonus_points_for_leader >= 0)
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_events_campaign_id ON events(campaign_id)")
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_events_pending_distribution
        ON events(ended_at) WHERE active AND NOT points_distributed
    """)

    # --- QR codes ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS qr_codes (
            id BIGSERIAL PRIMARY KEY,
            campaign_id BIGINT NOT NULL REFERENCES campaigns(id) ON DELETE CASCADE,
            event_id BIGINT REFERENCES events(id) ON DELETE CASCADE,
            type VARCHAR(24) NOT NULL
                CHECK (type IN ('REGISTRATION', 'ENTRY', 'EXIT', 'LEADER_GUEST', 'MILITANT_FASTTRACK')),
            code VARCHAR(96) NOT NULL UNIQUE,
            owner_persona_id BIGINT REFERENCES personas(id) ON DELETE CASCADE,
            active BOOLEAN NOT NULL DEFAULT TRUE,
            expires_at TIMESTAMPTZ,
            scan_count INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            deactivated_at TIMESTAMPTZ,
            CONSTRAINT ck_qr_codes_leader_guest_owner
                CHECK (type <> 'LEADER_GUEST' OR owner_persona_id IS NOT NULL),
            CONSTRAINT ck_qr_codes_militant_campaign_scope
                CHECK (type <> 'MILITANT_FASTTRACK' OR (event_id IS NULL AND owner_persona_id IS NOT NULL))
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_qr_codes_event_id ON qr_codes(event_id)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_qr_codes_owner_persona_id ON qr_codes(owner_persona_id)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_qr_codes_campaign_type ON qr_codes(campaign_id, type)")
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_qr_codes_militant_owner
        ON qr_codes(campaign_id, owner_persona_id)
        WHERE type = 'MILITANT_FASTTRACK' AND active
    """)

    # --- Attendance records ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS attendance_records (
            id BIGSERIAL PRIMARY KEY,
            event_id BIGINT NOT NULL REFERENCES events(id) ON DELETE CASCADE,
            persona_id BIGINT NOT NULL REFERENCES personas(id) ON DELETE CASCADE,
            referring_leader_id BIGINT REFERENCES personas(id) ON DELETE SET NULL,
            group_id BIGINT,
            status VARCHAR(16) NOT NULL
                CHECK (status IN ('REGISTERED', 'ENTERED', 'COMPLETED')),
            registered_at TIMESTAMPTZ NOT NULL,
            entered_at TIMESTAMPTZ,
            exited_at TIMESTAMPTZ,
            fast_track BOOLEAN NOT NULL DEFAULT FALSE,
            closed_by_system BOOLEAN NOT NULL DEFAULT FALSE,
            entry_qr_code_id BIGINT REFERENCES qr_codes(id) ON DELETE SET NULL,
            exit_qr_code_id BIGINT REFERENCES qr_codes(id) ON DELETE SET NULL,
            points_awarded INTEGER NOT NULL DEFAULT 0,
            points_settled BOOLEAN NOT NULL DEFAULT FALSE,
            CONSTRAINT uq_attendance_event_persona UNIQUE (event_id, persona_id),
            CONSTRAINT ck_attendance_exit_after_entry
                CHECK (exited_at IS NULL OR (entered_at IS NOT NULL AND exited_at >= entered_at))
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_attendance_records_persona_id ON attendance_records(persona_id)")
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_attendance_records_referring_leader_id "
        "ON attendance_records(referring_leader_id)"
    )
    op.execute("CREATE INDEX IF NOT EXISTS idx_attendance_event_status ON attendance_records(event_id, status)")

    # --- Point history ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS point_history (
            id BIGSERIAL PRIMARY KEY,
            persona_id BIGINT NOT NULL REFERENCES personas(id) ON DELETE CASCADE,
            event_id BIGINT REFERENCES events(id) ON DELETE CASCADE,
            kind VARCHAR(32) NOT NULL CHECK (kind IN ('attendance', 'leader_bonus')),
            amount INTEGER NOT NULL,
            description VARCHAR(256),
            metadata JSON NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_point_history_persona_id ON point_history(persona_id)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_point_history_event_id ON point_history(event_id)")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS point_history CASCADE")
    op.execute("DROP TABLE IF EXISTS attendance_records CASCADE")
    op.execute("DROP TABLE IF EXISTS qr_codes CASCADE")
    op.execute("DROP TABLE IF EXISTS events CASCADE")
    op.execute("DROP TABLE IF EXISTS personas CASCADE")
    op.execute("DROP TABLE IF EXISTS campaigns CASCADE")
