"""Platform authorization lookup for playback verification"""
import logging
from abc import ABC, abstractmethod
from typing import Callable
from datetime import datetime

from raid_engine.errors import Unauthenticated
from raid_engine.models.raid import AccessContext, Platform
from raid_engine.services.storage import StorageService
from raid_engine.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

class AuthorizationProvider(ABC):
    """Yields a usable access context for a participant on one platform"""

    platform: Platform

    @abstractmethod
    def get_valid_access_context(self, participant_id: str) -> AccessContext:
        """
        Raises:
            Unauthenticated: If the participant has no usable authorization
        """

class StoredAuthorizationProvider(AuthorizationProvider):
    """
    Reads authorization the OAuth flow stored in platform_accounts.

    Token refresh belongs to the OAuth flow; an expired stored token is
    treated as no authorization at all.
    """

    def __init__(self, storage: StorageService, platform: Platform,
                 require_token: bool = True, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.platform = Platform(platform)
        # Audius reads public now-playing data and only needs the linked user id
        self.require_token = require_token
        self.clock = clock

    def get_valid_access_context(self, participant_id: str) -> AccessContext:
        context = self.storage.get_platform_account(participant_id, self.platform)
        if context is None:
            raise Unauthenticated(f"No {self.platform.value} account linked for {participant_id}")

        if self.require_token:
            if not context.access_token:
                raise Unauthenticated(f"No {self.platform.value} access token for {participant_id}")
            if context.expires_at is not None and context.expires_at <= self.clock():
                logger.info(f"{self.platform.value} token for {participant_id} expired at {context.expires_at.isoformat()}")
                raise Unauthenticated(f"{self.platform.value} token expired for {participant_id}")
        elif not context.platform_user_id:
            raise Unauthenticated(f"No {self.platform.value} user id linked for {participant_id}")

        return context
