"""Per-session qualification state machine"""
from datetime import datetime
from enum import Enum

from raid_engine.session_registry import TrackingSession

class SessionState(str, Enum):
    LISTENING = 'listening'
    IDLE = 'idle'
    QUALIFIED = 'qualified'

class PlaybackOutcome(str, Enum):
    PLAYING = 'playing'
    NOT_PLAYING = 'not_playing'
    AUTH_LOST = 'auth_lost'

class Transition(str, Enum):
    """What one evaluation did to a session"""
    PROGRESSED = 'progressed'    # playing, below the threshold
    QUALIFIED = 'qualified'      # playing, threshold reached
    RESET = 'reset'              # stopped playing, stretch discarded
    IDLE = 'idle'                # still not playing
    AUTH_LOST = 'auth_lost'      # authorization gone, session ends
    EXPIRED = 'expired'          # raid window closed, session ends
    TIMED_OUT = 'timed_out'      # idle too long, session ends
    SKIPPED = 'skipped'          # transient failure or removed session

TERMINAL_TRANSITIONS = {Transition.QUALIFIED, Transition.AUTH_LOST, Transition.EXPIRED, Transition.TIMED_OUT}

def session_state(session: TrackingSession) -> SessionState:
    if session.accumulated_listen_seconds >= session.required_seconds:
        return SessionState.QUALIFIED
    return SessionState.LISTENING if session.is_currently_listening else SessionState.IDLE

class QualificationStateMachine:
    """
    Advances a session by one observation.

    Listening time only counts as one continuous stretch: any observation of
    not-playing discards the stretch. Elapsed time is measured from the
    session's own last evaluation, so tick cadence only affects granularity.
    The caller holds the session lock.
    """

    def advance(self, session: TrackingSession, outcome: PlaybackOutcome, now: datetime) -> Transition:
        elapsed = max(0.0, (now - session.last_evaluated_at).total_seconds())
        session.last_evaluated_at = now

        if outcome is PlaybackOutcome.AUTH_LOST:
            session.is_currently_listening = False
            return Transition.AUTH_LOST

        if outcome is PlaybackOutcome.PLAYING:
            session.accumulated_listen_seconds += elapsed
            session.is_currently_listening = True
            session.last_played_at = now
            if session.accumulated_listen_seconds >= session.required_seconds:
                return Transition.QUALIFIED
            return Transition.PROGRESSED

        was_listening = session.is_currently_listening
        session.is_currently_listening = False
        # Idle holds the counter at zero
        session.accumulated_listen_seconds = 0.0
        return Transition.RESET if was_listening else Transition.IDLE

    @staticmethod
    def idle_for(session: TrackingSession, now: datetime) -> float:
        """Seconds since the session last played (or started, if it never did)"""
        since = session.last_played_at or session.started_at
        return max(0.0, (now - since).total_seconds())
