"""Spotify playback verification"""
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

class SpotifyAPI(PlatformClient):
    """Spotify Web API calls needed for playback checks"""

    platform_name = 'Spotify'

    def __init__(self, base_url: str = settings.SPOTIFY_API_URL, market: str = settings.SPOTIFY_MARKET,
                 timeout: float = settings.VERIFIER_TIMEOUT_SECONDS,
                 session: Optional[requests.Session] = None):
        super().__init__(base_url, timeout=timeout, session=session)
        self.market = market

    def get_playback_state(self, token: str, cooldown_key: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Get the user's playback state (track, progress and device).

        Returns:
            Playback state dict, or None when nothing is playing (204)
        """
        response = self._make_request(
            'me/player',
            params={'market': self.market},
            token=token,
            cooldown_key=cooldown_key
        )
        if response.status_code == 204:
            return None
        if response.status_code >= 400:
            raise PlatformUnavailable(f"Unexpected Spotify response ({response.status_code}) for playback state")
        return self._json(response) or None

class SpotifyPlaybackVerifier(PlaybackVerifier):
    """Verifies playback through the Spotify player endpoint"""

    platform = Platform.SPOTIFY

    def __init__(self, authorization: AuthorizationProvider, api: Optional[SpotifyAPI] = None):
        super().__init__(authorization)
        self.api = api or SpotifyAPI()

    def check_playback(self, participant_id: str, track_id: str) -> PlaybackStatus:
        context = self.authorization.get_valid_access_context(participant_id)
        state = self.api.get_playback_state(context.access_token, cooldown_key=participant_id)
        observed_at = utcnow()

        if not state:
            return PlaybackStatus(is_playing=False, observed_at=observed_at)

        item = state.get('item') if isinstance(state.get('item'), dict) else None
        device = state.get('device') if isinstance(state.get('device'), dict) else {}
        current_id = item.get('id') if item else None
        # Relinked tracks report the requested id under linked_from
        linked = item.get('linked_from') if item and isinstance(item.get('linked_from'), dict) else {}
        matches = current_id == track_id or linked.get('id') == track_id

        is_playing = bool(state.get('is_playing')) and matches
        if state.get('is_playing') and not matches:
            logger.debug(f"Participant {participant_id} is playing {current_id}, not {track_id}")

        return PlaybackStatus(
            is_playing=is_playing,
            observed_at=observed_at,
            position_ms=state.get('progress_ms'),
            device_ref=device.get('id'),
            current_track_id=current_id
        )
