"""Error taxonomy for listening verification and reward settlement"""
from typing import Optional


class RaidEngineError(Exception):
    """Base class for all engine errors"""


# --- Authorization: terminal for a session, user-actionable ---

class Unauthenticated(RaidEngineError):
    """Participant has no usable platform authorization"""


class AuthExpired(Unauthenticated):
    """Platform rejected the participant's access token"""


# --- Transient platform errors: skipped, retried next tick ---

class TransientPlatformError(RaidEngineError):
    """Playback could not be checked this time"""


class RateLimited(TransientPlatformError):
    """Platform asked us to back off"""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class PlatformUnavailable(TransientPlatformError):
    """Platform failed, timed out or returned an unusable response"""


# --- Caller errors: surfaced directly, never retried ---

class CallerError(RaidEngineError):
    """Request cannot be satisfied in the current state"""


class RaidNotFound(CallerError):
    pass


class RaidNotActive(CallerError):
    pass


class RaidFull(CallerError):
    pass


class NotJoined(CallerError):
    pass


class NotQualified(CallerError):
    pass


class AlreadyQualified(CallerError):
    pass


class AlreadyClaimed(CallerError):
    pass


class PremiumRequired(CallerError):
    pass


# --- Settlement ---

class SettlementUnavailable(RaidEngineError):
    """Settlement program could not move funds"""


class SettlementPending(SettlementUnavailable):
    """Claim is recorded but payout has not happened yet; retried out-of-band"""

    def __init__(self, message: str, raid_id: int, participant_id: str):
        super().__init__(message)
        self.raid_id = raid_id
        self.participant_id = participant_id
