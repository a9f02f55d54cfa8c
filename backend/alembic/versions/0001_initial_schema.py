"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-04-01 00:00:00
"""
from alembic import op
import sqlalchemy as sa


revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_PREDICATE = sa.text("status IN ('pending', 'confirmed')")


def upgrade():
    op.create_table(
        "providers",
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("timezone", sa.Text(), nullable=False, server_default=sa.text("'UTC'")),
        sa.Column("slot_duration_minutes", sa.Integer(), nullable=False, server_default=sa.text("30")),
        sa.Column("work_schedule", sa.Text(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("is_active", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP")),
    )

    op.create_table(
        "blocked_intervals",
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("start_at", sa.DateTime(), nullable=False),
        sa.Column("end_at", sa.DateTime(), nullable=False),
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reason", sa.Text()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP")),
    )
    op.create_index("ix_blocked_intervals_provider_id", "blocked_intervals", ["provider_id"])

    op.create_table(
        "bookings",
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("providers.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("client_id", sa.Text(), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "confirmed", "completed", "cancelled", name="booking_status"),
            nullable=False,
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("notes", sa.Text()),
        sa.Column("series_id", sa.Text()),
        sa.Column("rescheduled_from_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="SET NULL")),
        sa.Column("cancelled_at", sa.DateTime()),
        sa.Column("cancelled_by", sa.Text()),
        sa.Column("cancel_reason", sa.Text()),
        sa.Column("completed_at", sa.DateTime()),
    )
    op.create_index(
        "uq_bookings_active_slot",
        "bookings",
        ["provider_id", "scheduled_at"],
        unique=True,
        sqlite_where=ACTIVE_PREDICATE,
        postgresql_where=ACTIVE_PREDICATE,
    )
    op.create_index("ix_bookings_client", "bookings", ["client_id"])
    op.create_index("ix_bookings_series_id", "bookings", ["series_id"])

    op.create_table(
        "slot_holds",
        sa.Column("slot_key", sa.Text(), primary_key=True),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("start_at", sa.DateTime(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("holder_session_id", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("holder_client_id", sa.Text()),
        sa.Column("reserved_for", sa.Text()),
    )
    op.create_index("ix_slot_holds_provider_id", "slot_holds", ["provider_id"])
    op.create_index("ix_slot_holds_expires_at", "slot_holds", ["expires_at"])

    op.create_table(
        "waitlist_entries",
        sa.Column("slot_key", sa.Text(), nullable=False),
        sa.Column("provider_id", sa.Integer(), sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("client_id", sa.Text(), nullable=False),
        sa.Column("requested_at", sa.DateTime(), nullable=False),
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("offer_expires_at", sa.DateTime()),
        sa.UniqueConstraint("slot_key", "client_id", name="uq_waitlist_slot_client"),
    )
    op.create_index("ix_waitlist_queue", "waitlist_entries", ["slot_key", "requested_at"])
    op.create_index("ix_waitlist_entries_offer_expires_at", "waitlist_entries", ["offer_expires_at"])

    op.create_table(
        "slot_events",
        sa.Column("provider_id", sa.Integer(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("slot_key", sa.Text(), nullable=False),
        sa.Column("start_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("client_id", sa.Text()),
        sa.Column("payload", sa.Text(), nullable=False, server_default=sa.text("'{}'")),
        sa.UniqueConstraint("provider_id", "sequence", name="uq_slot_events_channel_seq"),
    )


def downgrade():
    op.drop_table("slot_events")
    op.drop_index("ix_waitlist_entries_offer_expires_at", table_name="waitlist_entries")
    op.drop_index("ix_waitlist_queue", table_name="waitlist_entries")
    op.drop_table("waitlist_entries")
    op.drop_index("ix_slot_holds_expires_at", table_name="slot_holds")
    op.drop_index("ix_slot_holds_provider_id", table_name="slot_holds")
    op.drop_table("slot_holds")
    op.drop_index("ix_bookings_series_id", table_name="bookings")
    op.drop_index("ix_bookings_client", table_name="bookings")
    op.drop_index("uq_bookings_active_slot", table_name="bookings")
    op.drop_table("bookings")
    op.drop_index("ix_blocked_intervals_provider_id", table_name="blocked_intervals")
    op.drop_table("blocked_intervals")
    op.drop_table("providers")
