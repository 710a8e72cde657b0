"""Tests for the session evaluation boundary."""

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from conftest import START
from raid_engine.models.raid import Platform, PlaybackStatus
from raid_engine.qualification import Transition
from raid_engine.tracking import SessionEvaluator


@pytest.fixture
def joined(engine, make_raid, authorization, verifier):
    raid = make_raid()
    authorization.grant('alice')
    session = engine.join_raid('alice', raid.id)
    verifier.set_playing('alice')
    return raid, session


class TestPersistenceFailure:
    def test_failed_write_rolls_session_back(self, engine, joined, storage, clock):
        raid, session = joined
        clock.advance(10)
        error = OperationalError('UPDATE', {}, Exception('database is locked'))
        with patch.object(storage, 'save_progress', side_effect=error):
            assert engine.evaluator.evaluate(session) is Transition.SKIPPED

        assert session.accumulated_listen_seconds == 0
        assert session.last_evaluated_at == START
        assert engine.registry.get('alice', raid.id) is session

        # Next successful tick credits the whole interval
        clock.advance(10)
        assert engine.evaluator.evaluate(session) is Transition.PROGRESSED
        assert session.accumulated_listen_seconds == 20
        assert storage.get_participant(raid.id, 'alice').total_listen_duration == 20

    def test_failed_qualification_write_keeps_session(self, engine, joined, storage, clock):
        raid, session = joined
        clock.advance(30)
        error = OperationalError('UPDATE', {}, Exception('disk I/O error'))
        with patch.object(storage, 'mark_qualified', side_effect=error):
            assert engine.evaluator.evaluate(session) is Transition.SKIPPED

        assert storage.get_participant(raid.id, 'alice').qualified is False
        assert engine.evaluator.evaluate(session) is Transition.QUALIFIED
        assert storage.get_participant(raid.id, 'alice').qualified is True


class TestRemovedSessions:
    def test_removal_during_playback_check_is_honoured(self, engine, joined, storage, clock):
        """A session removed while its platform call is running is not written."""
        raid, session = joined
        clock.advance(10)
        verifier = MagicMock(platform=Platform.SPOTIFY)

        def check_playback(participant_id, track_id):
            engine.registry.remove(participant_id, raid.id)
            return PlaybackStatus(is_playing=True, observed_at=clock())

        verifier.check_playback.side_effect = check_playback
        evaluator = SessionEvaluator(engine.registry, storage, {Platform.SPOTIFY: verifier}, engine.completion,
                                     clock=clock)

        assert evaluator.evaluate(session) is Transition.SKIPPED
        assert session.accumulated_listen_seconds == 0
        assert storage.get_participant(raid.id, 'alice').total_listen_duration == 0

    def test_removed_session_is_not_checked(self, engine, joined, verifier):
        raid, session = joined
        engine.leave_raid('alice', raid.id)
        verifier.calls.clear()
        assert engine.evaluator.evaluate(session) is Transition.SKIPPED
        assert verifier.calls == []


class TestVerifierSelection:
    def test_missing_verifier_skips(self, engine, joined, storage, clock):
        raid, session = joined
        evaluator = SessionEvaluator(engine.registry, storage, {}, engine.completion, clock=clock)
        clock.advance(10)
        assert evaluator.evaluate(session) is Transition.SKIPPED


class TestNotifications:
    def test_channel_failure_does_not_block_progress(self, engine, joined, channel, storage, clock):
        raid, session = joined
        channel.fail = True
        clock.advance(10)
        assert engine.evaluator.evaluate(session) is Transition.PROGRESSED
        assert storage.get_participant(raid.id, 'alice').total_listen_duration == 10

    def test_progress_message_is_edited_in_place(self, engine, joined, channel, clock):
        raid, session = joined
        for _ in range(2):
            clock.advance(10)
            engine.evaluator.evaluate(session)
        refs = {ref for pid, kind, ref, _ in channel.sent if kind == 'progress'}
        assert refs == {'msg-1'}
