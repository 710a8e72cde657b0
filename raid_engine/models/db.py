"""SQLAlchemy database models for raids, participants and platform accounts"""
import datetime

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Boolean, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)

class Raid(Base):
    """
    A time-boxed listening campaign for one track.
    Created by the sponsor flow; status is moved by the completion detector.
    """
    __tablename__ = 'raids'

    id = Column(Integer, primary_key=True)
    track_id = Column(String, nullable=False)
    track_title = Column(String, nullable=True)
    track_artist = Column(String, nullable=True)
    platform = Column(String, nullable=False)
    required_listen_seconds = Column(Integer, nullable=False, default=30)
    participant_goal = Column(Integer, nullable=False)
    max_participants = Column(Integer, nullable=True)
    reward_amount = Column(Float, nullable=False)
    token_mint = Column(String, nullable=False, default='SOL')
    premium_only = Column(Boolean, nullable=False, default=False)
    # ACTIVE -> COMPLETED | EXPIRED | CANCELLED, never back
    status = Column(String, nullable=False, default='ACTIVE', index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

class RaidParticipant(Base):
    """
    Durable record of one participant in one raid.
    qualified_at and claimed_at are set exactly once and never cleared.
    """
    __tablename__ = 'raid_participants'
    __table_args__ = (
        UniqueConstraint('raid_id', 'participant_id', name='uq_raid_participant'),
    )

    id = Column(Integer, primary_key=True)
    raid_id = Column(Integer, ForeignKey('raids.id'), nullable=False, index=True)
    participant_id = Column(String, nullable=False, index=True)
    joined_at = Column(DateTime(timezone=True), default=_utcnow)
    # True while the engine holds a live tracking session for this record
    tracking_active = Column(Boolean, nullable=False, default=False)

    # Qualifying state
    is_listening = Column(Boolean, nullable=False, default=False)
    total_listen_duration = Column(Integer, nullable=False, default=0)
    last_checked_at = Column(DateTime(timezone=True), nullable=True)

    # Qualification state
    qualified = Column(Boolean, nullable=False, default=False, index=True)
    qualified_at = Column(DateTime(timezone=True), nullable=True)

    # Settlement state
    claimed_reward = Column(Boolean, nullable=False, default=False)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    claim_tx_reference = Column(String, nullable=True)
    settlement_status = Column(String, nullable=False, default='none')
    settlement_attempts = Column(Integer, nullable=False, default=0)
    last_settlement_error = Column(String, nullable=True)

    # Notification bookkeeping
    last_notification_message_ref = Column(String, nullable=True)
    last_notified_at = Column(DateTime(timezone=True), nullable=True)

class PlatformAccount(Base):
    """
    Streaming platform authorization for a participant.
    Written by the OAuth flow; the engine only reads it.
    """
    __tablename__ = 'platform_accounts'
    __table_args__ = (
        UniqueConstraint('participant_id', 'platform', name='uq_platform_account'),
    )

    id = Column(Integer, primary_key=True)
    participant_id = Column(String, nullable=False, index=True)
    platform = Column(String, nullable=False)
    platform_user_id = Column(String, nullable=True)
    access_token = Column(String, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    is_premium = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
