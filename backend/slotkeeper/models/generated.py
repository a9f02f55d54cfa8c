from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()
metadata = Base.metadata

BOOKING_STATUSES = ("pending", "confirmed", "completed", "cancelled")
ACTIVE_BOOKING_STATUSES = ("pending", "confirmed")

_ACTIVE_PREDICATE = text("status IN ('pending', 'confirmed')")


class Providers(Base):
    __tablename__ = 'providers'

    name = Column(Text, nullable=False)
    timezone = Column(Text, nullable=False, server_default=text("'UTC'"))
    slot_duration_minutes = Column(Integer, nullable=False, server_default=text('30'))
    work_schedule = Column(Text, nullable=False, server_default=text("'{}'"))
    is_active = Column(Integer, nullable=False, server_default=text('1'))
    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime, server_default=text('CURRENT_TIMESTAMP'))

    blocked_intervals = relationship('BlockedIntervals', back_populates='provider')
    bookings = relationship('Bookings', back_populates='provider')


class BlockedIntervals(Base):
    __tablename__ = 'blocked_intervals'

    provider_id = Column(ForeignKey('providers.id', ondelete='CASCADE'), nullable=False, index=True)
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)
    id = Column(Integer, primary_key=True)
    reason = Column(Text)
    created_at = Column(DateTime, server_default=text('CURRENT_TIMESTAMP'))

    provider = relationship('Providers', back_populates='blocked_intervals')


class Bookings(Base):
    __tablename__ = 'bookings'
    __table_args__ = (
        # One live booking per provider start time. Cancelled/completed rows
        # stay for history and are outside the index.
        Index(
            'uq_bookings_active_slot',
            'provider_id',
            'scheduled_at',
            unique=True,
            sqlite_where=_ACTIVE_PREDICATE,
            postgresql_where=_ACTIVE_PREDICATE,
        ),
        Index('ix_bookings_client', 'client_id'),
    )

    provider_id = Column(ForeignKey('providers.id', ondelete='RESTRICT'), nullable=False)
    client_id = Column(Text, nullable=False)
    scheduled_at = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    status = Column(Enum(*BOOKING_STATUSES, name='booking_status'), nullable=False)
    version = Column(Integer, nullable=False, server_default=text('1'))
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    id = Column(Integer, primary_key=True)
    notes = Column(Text)
    series_id = Column(Text, index=True)
    rescheduled_from_id = Column(ForeignKey('bookings.id', ondelete='SET NULL'))
    cancelled_at = Column(DateTime)
    cancelled_by = Column(Text)
    cancel_reason = Column(Text)
    completed_at = Column(DateTime)

    provider = relationship('Providers', back_populates='bookings')


class SlotHolds(Base):
    __tablename__ = 'slot_holds'

    slot_key = Column(Text, primary_key=True)
    provider_id = Column(ForeignKey('providers.id', ondelete='CASCADE'), nullable=False, index=True)
    start_at = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    holder_session_id = Column(Text, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    version = Column(Integer, nullable=False, server_default=text('1'))
    created_at = Column(DateTime, nullable=False)
    holder_client_id = Column(Text)
    # Set while the hold keeps a freed slot for an offered waitlist client
    reserved_for = Column(Text)


class WaitlistEntries(Base):
    __tablename__ = 'waitlist_entries'
    __table_args__ = (
        UniqueConstraint('slot_key', 'client_id', name='uq_waitlist_slot_client'),
        Index('ix_waitlist_queue', 'slot_key', 'requested_at'),
    )

    slot_key = Column(Text, nullable=False)
    provider_id = Column(ForeignKey('providers.id', ondelete='CASCADE'), nullable=False)
    client_id = Column(Text, nullable=False)
    requested_at = Column(DateTime, nullable=False)
    id = Column(Integer, primary_key=True)
    offer_expires_at = Column(DateTime, index=True)


class SlotEvents(Base):
    __tablename__ = 'slot_events'
    __table_args__ = (
        UniqueConstraint('provider_id', 'sequence', name='uq_slot_events_channel_seq'),
    )

    provider_id = Column(Integer, nullable=False)
    sequence = Column(Integer, nullable=False)
    event_type = Column(Text, nullable=False)
    slot_key = Column(Text, nullable=False)
    start_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False)
    id = Column(Integer, primary_key=True)
    client_id = Column(Text)
    payload = Column(Text, nullable=False, server_default=text("'{}'"))
