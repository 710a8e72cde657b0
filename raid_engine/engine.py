"""Listening verification and reward settlement engine"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Optional

from raid_engine.claims import ClaimCoordinator
from raid_engine.completion import CompletionDetector
from raid_engine.config import settings
from raid_engine.errors import (
    AlreadyQualified, NotJoined, PremiumRequired, RaidFull, RaidNotActive, RaidNotFound
)
from raid_engine.models.raid import Platform, RaidConfig, RaidStatus
from raid_engine.models.responses import ClaimResult, ProgressResponse
from raid_engine.notifications import LoggingNotificationChannel, NotificationDispatcher
from raid_engine.scheduler import PollingScheduler
from raid_engine.services.settlement import SettlementProgram
from raid_engine.services.storage import StorageService
from raid_engine.services.verifier import PlaybackVerifier
from raid_engine.session_registry import SessionRegistry, TrackingSession
from raid_engine.tracking import SessionEvaluator
from raid_engine.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

class RaidEngine:
    """
    Entry point used by the surrounding application (chat bot, web API).

    Wires the registry, evaluator, scheduler, claim coordinator and
    completion detector around one storage service.
    """

    def __init__(self, storage: StorageService, verifiers: Iterable[PlaybackVerifier],
                 settlement: SettlementProgram,
                 notifier: Optional[NotificationDispatcher] = None,
                 registry: Optional[SessionRegistry] = None,
                 clock: Callable[[], datetime] = utcnow,
                 tick_interval_seconds: float = settings.TICK_INTERVAL_SECONDS,
                 max_workers: int = settings.MAX_WORKERS,
                 idle_timeout_seconds: float = settings.IDLE_SESSION_TIMEOUT_SECONDS,
                 inactive_participant_seconds: int = settings.INACTIVE_PARTICIPANT_SECONDS):
        self.storage = storage
        self.clock = clock
        self.registry = registry or SessionRegistry()
        self.verifiers: Dict[Platform, PlaybackVerifier] = {v.platform: v for v in verifiers}
        self.notifier = notifier or NotificationDispatcher(
            storage, LoggingNotificationChannel(), settings.NOTIFICATION_MIN_INTERVAL_SECONDS, clock
        )
        self.inactive_participant_seconds = inactive_participant_seconds

        self.completion = CompletionDetector(storage, self.registry, self.notifier, clock)
        self.claims = ClaimCoordinator(storage, settlement, self.registry, clock)
        self.evaluator = SessionEvaluator(
            self.registry, storage, self.verifiers, self.completion,
            notifier=self.notifier, clock=clock, idle_timeout_seconds=idle_timeout_seconds
        )
        self.scheduler = PollingScheduler(
            self.registry, self.evaluator.evaluate,
            interval_seconds=tick_interval_seconds,
            max_workers=max_workers,
            on_tick=self.completion.sweep
        )

    def _get_raid(self, raid_id: int) -> RaidConfig:
        raid = self.storage.get_raid(raid_id)
        if raid is None:
            raise RaidNotFound(f"Raid {raid_id} not found")
        return raid

    def _verifier_for(self, platform: Platform) -> PlaybackVerifier:
        verifier = self.verifiers.get(platform)
        if verifier is None:
            raise RaidNotActive(f"{platform.value} raids are not supported by this engine")
        return verifier

    def join_raid(self, participant_id: str, raid_id: int) -> TrackingSession:
        """
        Start (or restart) tracking a participant in a raid.

        Rejoining resets unqualified progress to zero.

        Raises:
            RaidNotFound, RaidNotActive, RaidFull, AlreadyQualified,
            Unauthenticated, PremiumRequired
        """
        raid = self._get_raid(raid_id)
        now = self.clock()
        if not raid.is_joinable(now):
            raise RaidNotActive(f"Raid {raid_id} is {raid.status.value.lower()}"
                                f"{' (expired)' if raid.is_expired(now) else ''}")

        record = self.storage.get_participant(raid_id, participant_id)
        if record is not None and record.qualified:
            raise AlreadyQualified(f"{participant_id} already qualified for raid {raid_id}")
        if record is None:
            counts = self.storage.raid_counts(raid_id)
            if counts.qualified >= raid.participant_goal:
                raise RaidFull(f"Raid {raid_id} already reached its goal of {raid.participant_goal}")
            if raid.max_participants is not None and counts.joined >= raid.max_participants:
                raise RaidFull(f"Raid {raid_id} is full ({raid.max_participants} participants)")

        verifier = self._verifier_for(raid.platform)
        context = verifier.authorization.get_valid_access_context(participant_id)
        if raid.premium_only and not context.is_premium:
            raise PremiumRequired(f"Raid {raid_id} requires a {raid.platform.value.title()} Premium account")

        # Retire the old session before its durable progress is reset
        self.registry.remove(participant_id, raid_id)
        self.storage.join_participant(raid_id, participant_id, now)
        session = self.registry.create(
            participant_id, raid_id, raid.track_id, raid.platform, raid.required_listen_seconds, now,
            expires_at=raid.expires_at,
            is_premium_tier=context.is_premium,
            track_title=raid.track_title,
            reward_amount=raid.reward_amount,
            token_mint=raid.token_mint
        )
        self.notifier.progress(session)
        return session

    def leave_raid(self, participant_id: str, raid_id: int) -> None:
        """Stop tracking; the participant record and any qualification are kept"""
        self.registry.remove(participant_id, raid_id)
        record = self.storage.get_participant(raid_id, participant_id)
        if record is None:
            raise NotJoined(f"{participant_id} has not joined raid {raid_id}")
        if not record.qualified:
            self.storage.stop_tracking(raid_id, participant_id, self.clock())
        logger.info(f"{participant_id} left raid {raid_id}")

    def claim(self, participant_id: str, raid_id: int) -> ClaimResult:
        return self.claims.claim(participant_id, raid_id)

    def get_progress(self, participant_id: str, raid_id: int) -> ProgressResponse:
        raid = self._get_raid(raid_id)
        record = self.storage.get_participant(raid_id, participant_id)
        if record is None:
            raise NotJoined(f"{participant_id} has not joined raid {raid_id}")

        total = record.total_listen_duration
        listening = record.is_listening
        session = self.registry.get(participant_id, raid_id)
        if session is not None and not record.qualified:
            # Live accumulator is ahead of the last persisted value
            total = session.whole_seconds
            listening = session.is_currently_listening

        return ProgressResponse(
            raid_id=raid_id,
            participant_id=participant_id,
            total_listen_duration=total,
            required_listen_seconds=raid.required_listen_seconds,
            qualified=record.qualified,
            claimed=record.claimed_reward,
            is_listening=listening,
            tracking=session is not None,
            settlement_status=record.settlement_status.value
        )

    def restore_sessions(self) -> int:
        """Rebuild sessions for participants that were tracked before a restart"""
        now = self.clock()
        restored = 0
        for record, raid in self.storage.list_tracked_participants():
            if raid.is_expired(now) or raid.platform not in self.verifiers:
                continue
            if self.registry.get(record.participant_id, raid.id) is not None:
                continue
            account = self.storage.get_platform_account(record.participant_id, raid.platform)
            # Downtime is never credited: the next delta starts now
            self.registry.create(
                record.participant_id, raid.id, raid.track_id, raid.platform, raid.required_listen_seconds, now,
                expires_at=raid.expires_at,
                is_premium_tier=bool(account and account.is_premium),
                track_title=raid.track_title,
                reward_amount=raid.reward_amount,
                token_mint=raid.token_mint,
                accumulated_listen_seconds=float(record.total_listen_duration),
                is_currently_listening=record.is_listening,
                last_played_at=now if record.is_listening else None
            )
            restored += 1
        logger.info(f"Restored {restored} tracking sessions")
        return restored

    def cleanup_inactive_participants(self) -> int:
        """Administrative cleanup of stale, untracked, unqualified joiners"""
        cutoff = self.clock() - timedelta(seconds=self.inactive_participant_seconds)
        deleted = self.storage.delete_inactive_participants(cutoff)
        if deleted:
            logger.info(f"Cleaned up {deleted} inactive participants")
        return deleted

    def retry_pending_settlements(self, limit: int = 100) -> int:
        return self.claims.retry_pending_settlements(limit)

    def cancel_raid(self, raid_id: int) -> bool:
        """ACTIVE -> CANCELLED; returns False if the raid had already left ACTIVE"""
        self._get_raid(raid_id)
        if not self.storage.transition_raid(raid_id, RaidStatus.ACTIVE, RaidStatus.CANCELLED, self.clock()):
            return False
        dropped = self.registry.remove_raid(raid_id)
        logger.info(f"Raid {raid_id} cancelled ({dropped} sessions dropped)")
        return True

    def stats(self) -> Dict[str, int]:
        return self.registry.stats()

    def start(self) -> None:
        self.scheduler.start()

    def stop(self, wait: bool = True) -> None:
        self.scheduler.stop(wait=wait)
