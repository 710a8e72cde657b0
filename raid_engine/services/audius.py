"""Audius playback verification"""
import logging
from typing import Any, Dict, Optional

import requests

from raid_engine.config import settings
from raid_engine.errors import PlatformUnavailable
from raid_engine.models.raid import Platform, PlaybackStatus
from raid_engine.services.authorization import AuthorizationProvider
from raid_engine.services.http import PlatformClient
from raid_engine.services.verifier import PlaybackVerifier
from raid_engine.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

class AudiusAPI(PlatformClient):
    """Audius public API calls needed for playback checks"""

    platform_name = 'Audius'

    def __init__(self, base_url: str = settings.AUDIUS_API_URL,
                 timeout: float = settings.VERIFIER_TIMEOUT_SECONDS,
                 session: Optional[requests.Session] = None):
        super().__init__(base_url, timeout=timeout, session=session)

    def get_now_playing(self, audius_user_id: str) -> Optional[Dict[str, Any]]:
        """
        Get the track a user is currently playing.

        Returns:
            Track dict ({'id', 'title', ...}) or None when nothing is playing
        """
        response = self._make_request(
            f'users/{audius_user_id}/now-playing',
            cooldown_key=audius_user_id
        )
        if response.status_code in (204, 404):
            return None
        if response.status_code >= 400:
            raise PlatformUnavailable(f"Unexpected Audius response ({response.status_code}) for now-playing")
        data = self._json(response).get('data')
        return data if isinstance(data, dict) else None

class AudiusPlaybackVerifier(PlaybackVerifier):
    """Verifies playback through the Audius now-playing endpoint"""

    platform = Platform.AUDIUS

    def __init__(self, authorization: AuthorizationProvider, api: Optional[AudiusAPI] = None):
        super().__init__(authorization)
        self.api = api or AudiusAPI()

    def check_playback(self, participant_id: str, track_id: str) -> PlaybackStatus:
        context = self.authorization.get_valid_access_context(participant_id)
        now_playing = self.api.get_now_playing(context.platform_user_id)
        observed_at = utcnow()

        if not now_playing:
            return PlaybackStatus(is_playing=False, observed_at=observed_at)

        current_id = str(now_playing.get('id')) if now_playing.get('id') is not None else None
        return PlaybackStatus(
            is_playing=current_id == track_id,
            observed_at=observed_at,
            current_track_id=current_id
        )
