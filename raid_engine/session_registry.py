"""In-process registry of active tracking sessions"""
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Generator, List, Optional, Tuple

from raid_engine.models.raid import Platform

logger = logging.getLogger(__name__)

SessionKey = Tuple[str, int]

@dataclass
class SessionSnapshot:
    """Mutable session fields, captured so a failed write can be undone"""
    accumulated_listen_seconds: float
    is_currently_listening: bool
    last_evaluated_at: datetime
    last_played_at: Optional[datetime]

@dataclass(eq=False)
class TrackingSession:
    """
    One participant's in-progress listening attempt for one raid.

    Not durable: rebuilt from the participant record after a restart.
    Fields below the lock are only mutated while holding it.
    """
    participant_id: str
    raid_id: int
    track_id: str
    platform: Platform
    required_seconds: int
    started_at: datetime
    expires_at: Optional[datetime] = None
    is_premium_tier: bool = False
    track_title: Optional[str] = None
    reward_amount: float = 0.0
    token_mint: str = 'SOL'
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    accumulated_listen_seconds: float = 0.0
    is_currently_listening: bool = False
    last_evaluated_at: Optional[datetime] = None
    last_played_at: Optional[datetime] = None
    removed: bool = False

    def __post_init__(self):
        if self.last_evaluated_at is None:
            self.last_evaluated_at = self.started_at

    @property
    def key(self) -> SessionKey:
        return (self.participant_id, self.raid_id)

    @property
    def whole_seconds(self) -> int:
        return int(self.accumulated_listen_seconds)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            accumulated_listen_seconds=self.accumulated_listen_seconds,
            is_currently_listening=self.is_currently_listening,
            last_evaluated_at=self.last_evaluated_at,
            last_played_at=self.last_played_at
        )

    def restore(self, snapshot: SessionSnapshot) -> None:
        self.accumulated_listen_seconds = snapshot.accumulated_listen_seconds
        self.is_currently_listening = snapshot.is_currently_listening
        self.last_evaluated_at = snapshot.last_evaluated_at
        self.last_played_at = snapshot.last_played_at

class SessionRegistry:
    """
    Owns session identity: at most one live session per (participant, raid).

    The index lock only guards the mapping itself and is never held while a
    session lock is taken, so evaluations of distinct sessions never wait on
    each other.
    """

    def __init__(self):
        self._sessions: Dict[SessionKey, TrackingSession] = {}
        self._index_lock = threading.Lock()

    @staticmethod
    def _retire(session: TrackingSession) -> None:
        # Waits for an in-flight evaluation of this session to finish
        with session.lock:
            session.removed = True

    def create(self, participant_id: str, raid_id: int, track_id: str, platform: Platform,
               required_seconds: int, started_at: datetime, **options) -> TrackingSession:
        """Register a fresh session, retiring any existing one for the same key"""
        session = TrackingSession(
            participant_id=participant_id,
            raid_id=raid_id,
            track_id=track_id,
            platform=Platform(platform),
            required_seconds=required_seconds,
            started_at=started_at,
            **options
        )
        with self._index_lock:
            previous = self._sessions.pop(session.key, None)
        if previous is not None:
            self._retire(previous)
            logger.info(f"Replaced session for {participant_id} in raid {raid_id}")
        with self._index_lock:
            displaced = self._sessions.get(session.key)
            self._sessions[session.key] = session
        if displaced is not None:
            self._retire(displaced)
        logger.info(f"Tracking {participant_id} in raid {raid_id} ({session.platform.value}, {required_seconds}s required)")
        return session

    def get(self, participant_id: str, raid_id: int) -> Optional[TrackingSession]:
        with self._index_lock:
            return self._sessions.get((participant_id, raid_id))

    def remove(self, participant_id: str, raid_id: int) -> Optional[TrackingSession]:
        """Remove whatever session is registered for the key"""
        with self._index_lock:
            session = self._sessions.pop((participant_id, raid_id), None)
        if session is not None:
            self._retire(session)
            logger.info(f"Stopped tracking {participant_id} in raid {raid_id}")
        return session

    def discard(self, session: TrackingSession) -> bool:
        """Remove this exact session; a newer session under the same key is kept"""
        with self._index_lock:
            if self._sessions.get(session.key) is session:
                del self._sessions[session.key]
        with session.lock:
            was_live = not session.removed
            session.removed = True
        return was_live

    def remove_raid(self, raid_id: int) -> int:
        """Drop every session of a raid that reached a terminal state"""
        with self._index_lock:
            keys = [key for key in self._sessions if key[1] == raid_id]
            sessions = [self._sessions.pop(key) for key in keys]
        for session in sessions:
            self._retire(session)
        if sessions:
            logger.info(f"Stopped {len(sessions)} sessions for raid {raid_id}")
        return len(sessions)

    def list_active(self) -> List[TrackingSession]:
        """Point-in-time snapshot, safe to iterate while sessions are removed"""
        with self._index_lock:
            return list(self._sessions.values())

    @contextmanager
    def locked(self, session: TrackingSession) -> Generator[bool, None, None]:
        """Hold the session's lock; yields False if it was removed meanwhile"""
        with session.lock:
            yield not session.removed

    def __len__(self) -> int:
        with self._index_lock:
            return len(self._sessions)

    def stats(self) -> Dict[str, int]:
        sessions = self.list_active()
        premium = sum(1 for s in sessions if s.is_premium_tier)
        return {
            'total_sessions': len(sessions),
            'listening_sessions': sum(1 for s in sessions if s.is_currently_listening),
            'premium_sessions': premium,
            'free_sessions': len(sessions) - premium
        }
