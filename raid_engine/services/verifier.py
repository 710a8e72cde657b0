"""Playback verification capability shared by all platform adapters"""
from abc import ABC, abstractmethod

from raid_engine.models.raid import Platform, PlaybackStatus
from raid_engine.services.authorization import AuthorizationProvider

class PlaybackVerifier(ABC):
    """
    Answers "is this participant playing this track right now?".

    Implementations look up authorization themselves and raise
    AuthExpired/Unauthenticated (terminal for the session), or
    RateLimited/PlatformUnavailable (transient) instead of returning.
    """

    platform: Platform

    def __init__(self, authorization: AuthorizationProvider):
        self.authorization = authorization

    @abstractmethod
    def check_playback(self, participant_id: str, track_id: str) -> PlaybackStatus:
        """Report whether the participant is currently playing track_id"""
