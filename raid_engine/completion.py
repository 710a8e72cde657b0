"""Raid-level completion and expiry detection"""
import dataclasses
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from raid_engine.models.raid import RaidConfig, RaidStatus
from raid_engine.notifications import NotificationDispatcher
from raid_engine.services.storage import StorageService
from raid_engine.session_registry import SessionRegistry
from raid_engine.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

class CompletionDetector:
    """
    Performs the one-way ACTIVE -> COMPLETED / EXPIRED transitions.

    Both transitions are conditional updates on the raid status, so when
    several qualification events race only one caller wins and only the
    winner runs the side effects (dropping sessions, notifying).
    """

    def __init__(self, storage: StorageService, registry: SessionRegistry,
                 notifier: Optional[NotificationDispatcher] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.registry = registry
        self.notifier = notifier
        self.clock = clock

    def check_raid(self, raid_id: int) -> Optional[RaidStatus]:
        """
        Re-evaluate one raid after a qualification or an expired session.

        Returns:
            The status this call moved the raid to, or None if it did nothing
        """
        raid = self.storage.get_raid(raid_id)
        if raid is None:
            logger.warning(f"Raid {raid_id} vanished before completion check")
            return None
        return self.evaluate(raid)

    def evaluate(self, raid: RaidConfig) -> Optional[RaidStatus]:
        if raid.status is not RaidStatus.ACTIVE:
            return None

        now = self.clock()
        qualified = self.storage.count_qualified(raid.id)
        if qualified >= raid.participant_goal:
            return self._complete(raid, qualified, now)
        if raid.is_expired(now):
            return self._expire(raid, qualified, now)
        return None

    def _complete(self, raid: RaidConfig, qualified: int, now: datetime) -> Optional[RaidStatus]:
        if not self.storage.transition_raid(raid.id, RaidStatus.ACTIVE, RaidStatus.COMPLETED, now):
            logger.debug(f"Raid {raid.id} already left ACTIVE, completion handled elsewhere")
            return None

        dropped = self.registry.remove_raid(raid.id)
        logger.info(f"Raid {raid.id} completed with {qualified}/{raid.participant_goal} qualified ({dropped} sessions dropped)")
        if self.notifier is not None:
            completed = dataclasses.replace(raid, status=RaidStatus.COMPLETED, completed_at=now)
            self.notifier.raid_completed(completed)
        return RaidStatus.COMPLETED

    def _expire(self, raid: RaidConfig, qualified: int, now: datetime) -> Optional[RaidStatus]:
        if not self.storage.transition_raid(raid.id, RaidStatus.ACTIVE, RaidStatus.EXPIRED, now):
            return None

        dropped = self.registry.remove_raid(raid.id)
        logger.info(f"Raid {raid.id} expired with {qualified}/{raid.participant_goal} qualified ({dropped} sessions dropped)")
        return RaidStatus.EXPIRED

    def sweep(self) -> int:
        """Check every ACTIVE raid; returns how many changed state"""
        try:
            raids = self.storage.list_active_raids()
        except SQLAlchemyError:
            logger.warning("Skipping completion sweep, active raids could not be loaded")
            return 0

        changed = 0
        for raid in raids:
            try:
                if self.evaluate(raid) is not None:
                    changed += 1
            except SQLAlchemyError:
                logger.warning(f"Completion check for raid {raid.id} failed, retrying next sweep")
        return changed
