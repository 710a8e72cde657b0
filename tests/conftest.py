"""Shared pytest fixtures and fakes."""

import threading
from concurrent.futures import wait
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set

import pytest

from raid_engine.db import Database
from raid_engine.engine import RaidEngine
from raid_engine.errors import SettlementUnavailable, Unauthenticated
from raid_engine.models.raid import AccessContext, Platform, PlaybackStatus
from raid_engine.notifications import (
    NotificationChannel, NotificationContent, NotificationDispatcher, StaleMessageRef
)
from raid_engine.services.authorization import AuthorizationProvider
from raid_engine.services.settlement import SettlementProgram
from raid_engine.services.storage import StorageService
from raid_engine.services.verifier import PlaybackVerifier

START = datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime = START):
        self._now = now
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> datetime:
        with self._lock:
            self._now += timedelta(seconds=seconds)
            return self._now


class FakeAuthorization(AuthorizationProvider):
    """Authorization keyed by participant id; missing means unauthenticated."""

    def __init__(self, platform: Platform = Platform.SPOTIFY):
        self.platform = platform
        self.contexts: Dict[str, AccessContext] = {}

    def grant(self, participant_id: str, is_premium: bool = False) -> None:
        self.contexts[participant_id] = AccessContext(
            participant_id=participant_id,
            platform=self.platform,
            access_token=f"token-{participant_id}",
            platform_user_id=f"user-{participant_id}",
            is_premium=is_premium
        )

    def revoke(self, participant_id: str) -> None:
        self.contexts.pop(participant_id, None)

    def get_valid_access_context(self, participant_id: str) -> AccessContext:
        context = self.contexts.get(participant_id)
        if context is None:
            raise Unauthenticated(f"No authorization for {participant_id}")
        return context


class ScriptedVerifier(PlaybackVerifier):
    """Reports whatever the test set for each participant."""

    platform = Platform.SPOTIFY

    def __init__(self, authorization: FakeAuthorization, clock: FakeClock):
        super().__init__(authorization)
        self.clock = clock
        self.playing: Set[str] = set()
        self.errors: Dict[str, Exception] = {}
        self.calls: List[str] = []
        self.gate: Optional[threading.Event] = None
        self._lock = threading.Lock()

    def set_playing(self, participant_id: str, playing: bool = True) -> None:
        if playing:
            self.playing.add(participant_id)
        else:
            self.playing.discard(participant_id)

    def fail_with(self, participant_id: str, error: Optional[Exception]) -> None:
        if error is None:
            self.errors.pop(participant_id, None)
        else:
            self.errors[participant_id] = error

    def check_playback(self, participant_id: str, track_id: str) -> PlaybackStatus:
        with self._lock:
            self.calls.append(participant_id)
        if self.gate is not None:
            self.gate.wait(5)
        self.authorization.get_valid_access_context(participant_id)
        error = self.errors.get(participant_id)
        if error is not None:
            raise error
        return PlaybackStatus(
            is_playing=participant_id in self.playing,
            observed_at=self.clock(),
            current_track_id=track_id if participant_id in self.playing else None
        )


class FakeSettlement(SettlementProgram):
    """Records payouts; can be told to fail."""

    def __init__(self):
        self.payouts: List[tuple] = []
        self.failures_left = 0
        self._lock = threading.Lock()

    def settle(self, participant_id: str, raid_id: int, amount: float, token_mint: str = 'SOL') -> str:
        with self._lock:
            if self.failures_left > 0:
                self.failures_left -= 1
                raise SettlementUnavailable("escrow offline")
            self.payouts.append((participant_id, raid_id, amount, token_mint))
            return f"tx-{raid_id}-{participant_id}"


class RecordingChannel(NotificationChannel):
    """Keeps every delivered message in memory."""

    def __init__(self):
        self.sent: List[tuple] = []
        self.stale: Set[str] = set()
        self.fail = False
        self._counter = 0
        self._lock = threading.Lock()

    def send_or_update(self, participant_id: str, content: NotificationContent,
                       prior_message_ref: Optional[str] = None) -> str:
        with self._lock:
            if self.fail:
                raise ConnectionError("chat service down")
            if prior_message_ref is not None and prior_message_ref in self.stale:
                raise StaleMessageRef(prior_message_ref)
            if prior_message_ref is None:
                self._counter += 1
                message_ref = f"msg-{self._counter}"
            else:
                message_ref = prior_message_ref
            self.sent.append((participant_id, content.kind, message_ref, content))
            return message_ref

    def kinds(self, participant_id: Optional[str] = None) -> List[str]:
        return [kind for pid, kind, _, _ in self.sent if participant_id in (None, pid)]


@pytest.fixture
def database(tmp_path):
    """File-backed SQLite database shared by worker threads."""
    database = Database()
    database.init(f"sqlite:///{tmp_path / 'raids.db'}")
    yield database
    database.dispose()


@pytest.fixture
def storage(database):
    return StorageService(database)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def authorization():
    return FakeAuthorization()


@pytest.fixture
def verifier(authorization, clock):
    return ScriptedVerifier(authorization, clock)


@pytest.fixture
def settlement():
    return FakeSettlement()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def notifier(storage, channel, clock):
    return NotificationDispatcher(storage, channel, min_interval_seconds=0, clock=clock)


@pytest.fixture
def engine(storage, verifier, settlement, notifier, clock):
    engine = RaidEngine(
        storage, [verifier], settlement,
        notifier=notifier,
        clock=clock,
        tick_interval_seconds=10,
        max_workers=4,
        idle_timeout_seconds=300,
        inactive_participant_seconds=60
    )
    yield engine
    engine.stop()


@pytest.fixture
def make_raid(storage, clock):
    """Factory creating an ACTIVE Spotify raid."""

    def _make_raid(**overrides):
        values = {
            'track_id': 'track-1',
            'platform': Platform.SPOTIFY,
            'participant_goal': 1,
            'reward_amount': 2.5,
            'expires_at': clock() + timedelta(hours=1),
            'required_listen_seconds': 30,
            'track_title': 'Raid Anthem'
        }
        values.update(overrides)
        return storage.create_raid(**values)

    return _make_raid


def run_tick(engine: RaidEngine) -> list:
    """One scheduler tick, waiting for every submitted evaluation."""
    futures = engine.scheduler.tick()
    wait(futures)
    return [future.result() for future in futures]


def play_for(engine: RaidEngine, clock: FakeClock, seconds: float, ticks: int) -> list:
    """Advance the clock and tick, ticks times."""
    results = []
    for _ in range(ticks):
        clock.advance(seconds)
        results.extend(run_tick(engine))
    return results
