"""Shared HTTP plumbing for streaming platform APIs"""
import logging
import threading
import time
from typing import Dict, Optional, Any

import requests

from raid_engine.errors import AuthExpired, PlatformUnavailable, RateLimited

logger = logging.getLogger(__name__)

# --- Constants for request control ---
# Fallback back-off when a 429 carries no Retry-After header
RATE_LIMIT_DEFAULT_RETRY_SECONDS = 30
# Upper bound on a honoured Retry-After
RATE_LIMIT_MAX_RETRY_SECONDS = 300
# Base delay between retries of 5xx responses
SERVER_ERROR_RETRY_BASE_DELAY = 0.5
# ------------------------------------

class PlatformClient:
    """
    Makes bounded-time requests and classifies failures into the engine's
    error taxonomy: 401/403 -> AuthExpired, 429 -> RateLimited,
    5xx/timeouts/connection errors -> PlatformUnavailable.
    """

    platform_name = 'platform'

    def __init__(self, base_url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({'Accept': 'application/json'})
        # Rate-limit cooldowns keyed by caller-chosen key
        self._cooldowns: Dict[str, float] = {}
        self._cooldown_lock = threading.Lock()

    def _check_cooldown(self, key: str) -> None:
        with self._cooldown_lock:
            until = self._cooldowns.get(key)
            if until is None:
                return
            remaining = until - time.monotonic()
            if remaining <= 0:
                del self._cooldowns[key]
                return
        raise RateLimited(f"{self.platform_name} cooldown active for {key}", retry_after=remaining)

    def _record_rate_limit(self, key: str, retry_after: float) -> None:
        with self._cooldown_lock:
            self._cooldowns[key] = time.monotonic() + retry_after
        logger.warning(f"{self.platform_name} rate limited for {key}, backing off {retry_after:.0f}s")

    @staticmethod
    def _parse_retry_after(response: requests.Response) -> float:
        try:
            value = float(response.headers.get('Retry-After', RATE_LIMIT_DEFAULT_RETRY_SECONDS))
        except (TypeError, ValueError):
            value = RATE_LIMIT_DEFAULT_RETRY_SECONDS
        return max(1.0, min(value, RATE_LIMIT_MAX_RETRY_SECONDS))

    def _make_request(self, endpoint: str, params: Optional[Dict[str, Any]] = None,
                      token: Optional[str] = None, cooldown_key: Optional[str] = None,
                      retries: int = 1) -> Optional[requests.Response]:
        """
        GET an endpoint with a bounded timeout.

        Args:
            endpoint: Path relative to base_url
            params: Query parameters
            token: Bearer token, if the endpoint needs one
            cooldown_key: Key that a 429 puts into cooldown
            retries: Attempts for 5xx and network errors

        Returns:
            The successful response (2xx)
        """
        key = cooldown_key or 'global'
        self._check_cooldown(key)

        url = f'{self.base_url}/{endpoint.lstrip("/")}'
        headers = {'Authorization': f'Bearer {token}'} if token else None
        last_error: Optional[Exception] = None

        for attempt in range(1, retries + 1):
            try:
                logger.debug(f"Attempt {attempt}/{retries}: GET {url}")
                response = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
            except requests.exceptions.Timeout as e:
                last_error = e
                logger.warning(f"Timeout on attempt {attempt} for {url}")
            except requests.exceptions.RequestException as e:
                last_error = e
                logger.warning(f"Request error on attempt {attempt} for {url}: {e}")
            else:
                status = response.status_code
                if status < 400:
                    return response
                if status in (401, 403):
                    raise AuthExpired(f"{self.platform_name} rejected credentials ({status}) for {url}")
                if status == 429:
                    retry_after = self._parse_retry_after(response)
                    self._record_rate_limit(key, retry_after)
                    raise RateLimited(f"{self.platform_name} rate limit (429) for {url}", retry_after=retry_after)
                if status < 500:
                    # Other client errors are the caller's to interpret
                    return response
                last_error = PlatformUnavailable(f"{self.platform_name} server error ({status}) for {url}")
                logger.warning(f"Server error ({status}) on attempt {attempt} for {url}")

            if attempt < retries:
                time.sleep(SERVER_ERROR_RETRY_BASE_DELAY * attempt)

        raise PlatformUnavailable(f"{self.platform_name} unavailable for {url}: {last_error}")

    @staticmethod
    def _json(response: requests.Response) -> Dict[str, Any]:
        if response.status_code == 204 or not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            raise PlatformUnavailable(f"Invalid JSON from {response.url}: {response.text[:200]}")
        return data if isinstance(data, dict) else {}

    def close(self) -> None:
        self.session.close()
