"""Tests for the Spotify and Audius playback verifiers."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import requests

from raid_engine.errors import AuthExpired, PlatformUnavailable, RateLimited, Unauthenticated
from raid_engine.models.raid import Platform
from raid_engine.services.audius import AudiusAPI, AudiusPlaybackVerifier
from raid_engine.services.authorization import StoredAuthorizationProvider
from raid_engine.services.spotify import SpotifyAPI, SpotifyPlaybackVerifier


def _response(status_code=200, payload=None, headers=None):
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    response.content = b'{}' if payload is not None else b''
    response.json.return_value = payload
    response.url = 'https://platform.test'
    response.text = ''
    return response


def _http_session(*responses):
    session = MagicMock()
    session.headers = {}
    session.get.side_effect = list(responses)
    return session


def _player_state(track_id='track-1', is_playing=True, linked_from=None):
    item = {'id': track_id, 'name': 'Raid Anthem'}
    if linked_from:
        item['linked_from'] = {'id': linked_from}
    return {
        'is_playing': is_playing,
        'progress_ms': 42000,
        'device': {'id': 'device-9'},
        'item': item
    }


@pytest.fixture
def spotify_authorization(authorization):
    authorization.grant('alice')
    return authorization


class TestSpotifyVerifier:
    def _verifier(self, authorization, *responses):
        session = _http_session(*responses)
        api = SpotifyAPI('https://api.spotify.test/v1', market='DE', timeout=2, session=session)
        return SpotifyPlaybackVerifier(authorization, api), session

    def test_playing_requested_track(self, spotify_authorization):
        verifier, session = self._verifier(spotify_authorization, _response(200, _player_state()))

        status = verifier.check_playback('alice', 'track-1')

        assert status.is_playing is True
        assert status.position_ms == 42000
        assert status.device_ref == 'device-9'
        args, kwargs = session.get.call_args
        assert args[0] == 'https://api.spotify.test/v1/me/player'
        assert kwargs['params'] == {'market': 'DE'}
        assert kwargs['headers'] == {'Authorization': 'Bearer token-alice'}
        assert kwargs['timeout'] == 2

    def test_other_track_is_not_playing(self, spotify_authorization):
        verifier, _ = self._verifier(spotify_authorization, _response(200, _player_state('other')))
        status = verifier.check_playback('alice', 'track-1')
        assert status.is_playing is False
        assert status.current_track_id == 'other'

    def test_relinked_track_counts(self, spotify_authorization):
        verifier, _ = self._verifier(spotify_authorization, _response(200, _player_state('market-copy', linked_from='track-1')))
        assert verifier.check_playback('alice', 'track-1').is_playing is True

    def test_paused_is_not_playing(self, spotify_authorization):
        verifier, _ = self._verifier(spotify_authorization, _response(200, _player_state(is_playing=False)))
        assert verifier.check_playback('alice', 'track-1').is_playing is False

    def test_no_active_device(self, spotify_authorization):
        verifier, _ = self._verifier(spotify_authorization, _response(204))
        assert verifier.check_playback('alice', 'track-1').is_playing is False

    @pytest.mark.parametrize('status_code', [401, 403])
    def test_rejected_token(self, spotify_authorization, status_code):
        verifier, _ = self._verifier(spotify_authorization, _response(status_code))
        with pytest.raises(AuthExpired):
            verifier.check_playback('alice', 'track-1')

    def test_missing_authorization(self, authorization):
        verifier, session = self._verifier(authorization)
        with pytest.raises(Unauthenticated):
            verifier.check_playback('alice', 'track-1')
        session.get.assert_not_called()

    def test_rate_limit_starts_cooldown(self, spotify_authorization):
        verifier, session = self._verifier(spotify_authorization, _response(429, headers={'Retry-After': '10'}))

        with pytest.raises(RateLimited) as excinfo:
            verifier.check_playback('alice', 'track-1')
        assert excinfo.value.retry_after == 10

        with pytest.raises(RateLimited):
            verifier.check_playback('alice', 'track-1')
        assert session.get.call_count == 1

    def test_server_error_is_unavailable(self, spotify_authorization):
        verifier, _ = self._verifier(spotify_authorization, _response(503))
        with pytest.raises(PlatformUnavailable):
            verifier.check_playback('alice', 'track-1')

    def test_timeout_is_unavailable(self, spotify_authorization):
        verifier, _ = self._verifier(spotify_authorization, requests.exceptions.Timeout('read timed out'))
        with pytest.raises(PlatformUnavailable):
            verifier.check_playback('alice', 'track-1')


class TestAudiusVerifier:
    def _verifier(self, authorization, *responses):
        session = _http_session(*responses)
        api = AudiusAPI('https://api.audius.test/v1', timeout=2, session=session)
        return AudiusPlaybackVerifier(authorization, api), session

    def test_now_playing_matches(self, spotify_authorization):
        verifier, session = self._verifier(spotify_authorization, _response(200, {'data': {'id': 'D8x1', 'title': 'Anthem'}}))

        assert verifier.check_playback('alice', 'D8x1').is_playing is True
        args, _ = session.get.call_args
        assert args[0] == 'https://api.audius.test/v1/users/user-alice/now-playing'

    def test_nothing_playing(self, spotify_authorization):
        verifier, _ = self._verifier(spotify_authorization, _response(404))
        assert verifier.check_playback('alice', 'D8x1').is_playing is False

    def test_other_track(self, spotify_authorization):
        verifier, _ = self._verifier(spotify_authorization, _response(200, {'data': {'id': 'other'}}))
        assert verifier.check_playback('alice', 'D8x1').is_playing is False


class TestStoredAuthorization:
    def test_valid_token(self, storage, clock):
        storage.upsert_platform_account('alice', Platform.SPOTIFY, 'tok', clock() + timedelta(hours=1), is_premium=True)
        provider = StoredAuthorizationProvider(storage, Platform.SPOTIFY, clock=clock)
        context = provider.get_valid_access_context('alice')
        assert context.access_token == 'tok'
        assert context.is_premium is True

    def test_expired_token(self, storage, clock):
        storage.upsert_platform_account('alice', Platform.SPOTIFY, 'tok', clock() - timedelta(seconds=1))
        provider = StoredAuthorizationProvider(storage, Platform.SPOTIFY, clock=clock)
        with pytest.raises(Unauthenticated):
            provider.get_valid_access_context('alice')

    def test_no_account(self, storage, clock):
        provider = StoredAuthorizationProvider(storage, Platform.SPOTIFY, clock=clock)
        with pytest.raises(Unauthenticated):
            provider.get_valid_access_context('alice')

    def test_audius_only_needs_user_id(self, storage, clock):
        storage.upsert_platform_account('alice', Platform.AUDIUS, None, None, platform_user_id='D7x')
        provider = StoredAuthorizationProvider(storage, Platform.AUDIUS, require_token=False, clock=clock)
        assert provider.get_valid_access_context('alice').platform_user_id == 'D7x'

        storage.upsert_platform_account('bob', Platform.AUDIUS, None, None)
        with pytest.raises(Unauthenticated):
            provider.get_valid_access_context('bob')
