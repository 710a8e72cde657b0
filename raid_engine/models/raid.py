"""Domain models shared across verification, qualification and settlement"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

class Platform(str, Enum):
    SPOTIFY = 'SPOTIFY'
    AUDIUS = 'AUDIUS'

class RaidStatus(str, Enum):
    ACTIVE = 'ACTIVE'
    COMPLETED = 'COMPLETED'
    EXPIRED = 'EXPIRED'
    CANCELLED = 'CANCELLED'

class SettlementStatus(str, Enum):
    NONE = 'none'
    PENDING = 'pending'
    SETTLED = 'settled'

@dataclass
class RaidConfig:
    """Point-in-time view of a raid"""
    id: int
    track_id: str
    platform: Platform
    required_listen_seconds: int
    participant_goal: int
    reward_amount: float
    status: RaidStatus
    expires_at: datetime
    token_mint: str = 'SOL'
    premium_only: bool = False
    max_participants: Optional[int] = None
    track_title: Optional[str] = None
    track_artist: Optional[str] = None
    completed_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_joinable(self, now: datetime) -> bool:
        return self.status is RaidStatus.ACTIVE and not self.is_expired(now)

@dataclass
class ParticipantRecord:
    """Durable participant state for one raid"""
    raid_id: int
    participant_id: str
    tracking_active: bool
    is_listening: bool
    total_listen_duration: int
    last_checked_at: Optional[datetime]
    qualified: bool
    qualified_at: Optional[datetime]
    claimed_reward: bool
    claimed_at: Optional[datetime]
    claim_tx_reference: Optional[str]
    settlement_status: SettlementStatus
    settlement_attempts: int
    last_notification_message_ref: Optional[str]
    last_notified_at: Optional[datetime]
    joined_at: Optional[datetime] = None

@dataclass
class AccessContext:
    """Authorization for one participant on one platform"""
    participant_id: str
    platform: Platform
    access_token: Optional[str]
    platform_user_id: Optional[str] = None
    is_premium: bool = False
    expires_at: Optional[datetime] = None

@dataclass
class PlaybackStatus:
    """What the platform reports the participant is doing right now"""
    is_playing: bool
    observed_at: datetime
    position_ms: Optional[int] = None
    device_ref: Optional[str] = None
    current_track_id: Optional[str] = None

@dataclass
class RaidCounts:
    """Aggregates used for join and completion decisions"""
    joined: int
    qualified: int
