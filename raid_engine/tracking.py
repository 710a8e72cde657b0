"""Session evaluation: verifier -> state machine -> persistence"""
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from raid_engine.completion import CompletionDetector
from raid_engine.config import settings
from raid_engine.errors import RateLimited, TransientPlatformError, Unauthenticated
from raid_engine.models.raid import Platform
from raid_engine.notifications import NotificationDispatcher
from raid_engine.qualification import (
    TERMINAL_TRANSITIONS, PlaybackOutcome, QualificationStateMachine, Transition
)
from raid_engine.services.storage import StorageService
from raid_engine.services.verifier import PlaybackVerifier
from raid_engine.session_registry import SessionRegistry, TrackingSession
from raid_engine.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

class SessionEvaluator:
    """
    Evaluates one session per call; safe to run for distinct sessions in parallel.

    The verifier call happens without any lock held. The state change and
    its persistence happen under the session lock, after re-checking that
    the session was not removed in the meantime. Nothing raised here
    escapes to the scheduler.
    """

    def __init__(self, registry: SessionRegistry, storage: StorageService,
                 verifiers: Dict[Platform, PlaybackVerifier],
                 completion: CompletionDetector,
                 notifier: Optional[NotificationDispatcher] = None,
                 state_machine: Optional[QualificationStateMachine] = None,
                 clock: Callable[[], datetime] = utcnow,
                 idle_timeout_seconds: float = settings.IDLE_SESSION_TIMEOUT_SECONDS):
        self.registry = registry
        self.storage = storage
        self.verifiers = verifiers
        self.completion = completion
        self.notifier = notifier
        self.state_machine = state_machine or QualificationStateMachine()
        self.clock = clock
        self.idle_timeout_seconds = idle_timeout_seconds

    def evaluate(self, session: TrackingSession) -> Transition:
        if session.removed:
            return Transition.SKIPPED

        if session.expires_at is not None and self.clock() > session.expires_at:
            return self._expire(session)

        outcome = self._observe(session)
        if outcome is None:
            return Transition.SKIPPED

        with self.registry.locked(session) as live:
            if not live:
                logger.debug(f"Session {session.key} was removed during its playback check")
                return Transition.SKIPPED

            now = self.clock()
            snapshot = session.snapshot()
            transition = self.state_machine.advance(session, outcome, now)
            if transition in (Transition.IDLE, Transition.RESET) and self._idle_too_long(session, now):
                transition = Transition.TIMED_OUT

            try:
                kept = self._persist(session, transition, now)
            except SQLAlchemyError:
                session.restore(snapshot)
                logger.warning(f"Could not persist {transition.value} for session {session.key}, retrying next tick")
                return Transition.SKIPPED

            if transition in TERMINAL_TRANSITIONS or not kept:
                self.registry.discard(session)

        self._after(session, transition)
        return transition

    def _observe(self, session: TrackingSession) -> Optional[PlaybackOutcome]:
        verifier = self.verifiers.get(session.platform)
        if verifier is None:
            logger.error(f"No playback verifier configured for {session.platform.value}")
            return None

        try:
            status = verifier.check_playback(session.participant_id, session.track_id)
        except Unauthenticated as e:
            logger.info(f"Authorization lost for {session.participant_id} in raid {session.raid_id}: {e}")
            return PlaybackOutcome.AUTH_LOST
        except RateLimited as e:
            logger.debug(f"Rate limited checking {session.participant_id}: {e}")
            return None
        except TransientPlatformError as e:
            logger.warning(f"Playback check failed for {session.participant_id} in raid {session.raid_id}: {e}")
            return None
        except Exception:
            logger.exception(f"Unexpected error checking playback for {session.participant_id} in raid {session.raid_id}")
            return None

        return PlaybackOutcome.PLAYING if status.is_playing else PlaybackOutcome.NOT_PLAYING

    def _idle_too_long(self, session: TrackingSession, now: datetime) -> bool:
        if self.idle_timeout_seconds <= 0:
            return False
        return self.state_machine.idle_for(session, now) >= self.idle_timeout_seconds

    def _persist(self, session: TrackingSession, transition: Transition, now: datetime) -> bool:
        """Write the transition; False means the durable record no longer wants this session"""
        if transition is Transition.QUALIFIED:
            if not self.storage.mark_qualified(session.raid_id, session.participant_id, session.whole_seconds, now):
                logger.info(f"{session.participant_id} was already qualified for raid {session.raid_id}")
            else:
                logger.info(f"{session.participant_id} qualified for raid {session.raid_id} after {session.whole_seconds}s")
            return True

        if transition in (Transition.AUTH_LOST, Transition.TIMED_OUT):
            self.storage.stop_tracking(session.raid_id, session.participant_id, now)
            if transition is Transition.TIMED_OUT:
                logger.info(f"Session {session.key} idle for over {self.idle_timeout_seconds}s, tracking stopped")
            return True

        saved = self.storage.save_progress(
            session.raid_id, session.participant_id, session.is_currently_listening, session.whole_seconds, now
        )
        if transition is Transition.RESET:
            logger.debug(f"{session.participant_id} stopped playing, progress in raid {session.raid_id} reset")
        if not saved:
            logger.info(f"Record for {session.key} is qualified or gone, dropping session")
        return saved

    def _expire(self, session: TrackingSession) -> Transition:
        with self.registry.locked(session) as live:
            if not live:
                return Transition.SKIPPED
            try:
                self.storage.stop_tracking(session.raid_id, session.participant_id, self.clock())
            except SQLAlchemyError:
                logger.warning(f"Could not stop tracking expired session {session.key}, retrying next tick")
                return Transition.SKIPPED
            self.registry.discard(session)

        logger.info(f"Raid {session.raid_id} expired, stopped tracking {session.participant_id}")
        self._run_completion_check(session.raid_id)
        return Transition.EXPIRED

    def _run_completion_check(self, raid_id: int) -> None:
        try:
            self.completion.check_raid(raid_id)
        except SQLAlchemyError:
            logger.warning(f"Completion check for raid {raid_id} failed, the sweep will retry")

    def _after(self, session: TrackingSession, transition: Transition) -> None:
        """Side effects that must not run under the session lock"""
        if transition is Transition.QUALIFIED:
            if self.notifier is not None:
                self.notifier.qualified(session)
            self._run_completion_check(session.raid_id)
        elif transition is Transition.AUTH_LOST:
            if self.notifier is not None:
                self.notifier.reauthorize(session)
        elif transition in (Transition.PROGRESSED, Transition.RESET):
            if self.notifier is not None:
                self.notifier.progress(session)
