"""Tests for SessionRegistry ownership and locking."""

import threading

import pytest

from conftest import START
from raid_engine.models.raid import Platform
from raid_engine.session_registry import SessionRegistry


@pytest.fixture
def registry():
    return SessionRegistry()


def _create(registry, participant_id='alice', raid_id=1, **options):
    return registry.create(participant_id, raid_id, 'track-1', Platform.SPOTIFY, 30, START, **options)


class TestCreate:
    def test_one_session_per_key(self, registry):
        """Creating again for the same key replaces the old session."""
        old = _create(registry)
        new = _create(registry)
        assert len(registry) == 1
        assert registry.get('alice', 1) is new
        assert old.removed is True
        assert new.removed is False

    def test_new_session_starts_empty(self, registry):
        session = _create(registry)
        assert session.accumulated_listen_seconds == 0
        assert session.last_evaluated_at == START
        assert session.key == ('alice', 1)

    def test_accepts_restored_state(self, registry):
        session = _create(registry, accumulated_listen_seconds=12.0, is_currently_listening=True)
        assert session.whole_seconds == 12
        assert session.is_currently_listening is True


class TestRemove:
    def test_remove_marks_removed(self, registry):
        session = _create(registry)
        assert registry.remove('alice', 1) is session
        assert session.removed is True
        assert registry.get('alice', 1) is None

    def test_remove_missing_is_noop(self, registry):
        assert registry.remove('nobody', 1) is None

    def test_discard_keeps_newer_session(self, registry):
        """A stale evaluation cannot remove the session that replaced it."""
        old = _create(registry)
        new = _create(registry)
        assert registry.discard(old) is False
        assert registry.get('alice', 1) is new
        assert registry.discard(new) is True
        assert registry.get('alice', 1) is None

    def test_remove_raid_only_touches_that_raid(self, registry):
        _create(registry, 'alice', 1)
        _create(registry, 'bob', 1)
        other = _create(registry, 'carol', 2)
        assert registry.remove_raid(1) == 2
        assert registry.list_active() == [other]

    def test_locked_reports_removal(self, registry):
        session = _create(registry)
        registry.remove('alice', 1)
        with registry.locked(session) as live:
            assert live is False


class TestListActive:
    def test_snapshot_is_safe_during_removal(self, registry):
        for name in ('alice', 'bob', 'carol'):
            _create(registry, name)
        seen = []
        for session in registry.list_active():
            registry.remove(session.participant_id, session.raid_id)
            seen.append(session.participant_id)
        assert sorted(seen) == ['alice', 'bob', 'carol']
        assert len(registry) == 0


class TestConcurrency:
    def test_distinct_sessions_do_not_block_each_other(self, registry):
        """A held session lock does not delay work on other sessions."""
        busy = _create(registry, 'alice')
        other = _create(registry, 'bob')
        done = threading.Event()

        def work_on_other():
            with registry.locked(other) as live:
                assert live
            registry.create('carol', 1, 'track-1', Platform.SPOTIFY, 30, START)
            registry.list_active()
            done.set()

        with busy.lock:
            worker = threading.Thread(target=work_on_other)
            worker.start()
            assert done.wait(2)
        worker.join()

    def test_remove_waits_for_in_flight_evaluation(self, registry):
        session = _create(registry)
        removed = threading.Event()

        def remover():
            registry.remove('alice', 1)
            removed.set()

        with registry.locked(session) as live:
            assert live
            thread = threading.Thread(target=remover)
            thread.start()
            assert not removed.wait(0.1)
            assert session.removed is False
        thread.join(2)
        assert removed.is_set()
        assert session.removed is True


class TestStats:
    def test_counts_tiers_and_listening(self, registry):
        _create(registry, 'alice', is_premium_tier=True, is_currently_listening=True)
        _create(registry, 'bob')
        assert registry.stats() == {
            'total_sessions': 2,
            'listening_sessions': 1,
            'premium_sessions': 1,
            'free_sessions': 1
        }
