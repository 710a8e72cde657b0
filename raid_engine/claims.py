"""At-most-once reward claims and their settlement"""
import logging
from datetime import datetime
from typing import Callable, Optional

from raid_engine.errors import (
    AlreadyClaimed, NotQualified, RaidNotActive, RaidNotFound, SettlementPending, SettlementUnavailable
)
from raid_engine.models.raid import RaidConfig, RaidStatus, SettlementStatus
from raid_engine.models.responses import ClaimResult
from raid_engine.services.settlement import SettlementProgram
from raid_engine.services.storage import StorageService
from raid_engine.session_registry import SessionRegistry
from raid_engine.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

class ClaimCoordinator:
    """
    Converts a qualified participant record into a settled reward.

    The claim flag is set by a single conditional update before any money
    moves. A settlement failure leaves the flag set and the record pending,
    to be finished by retry_pending_settlements.
    """

    def __init__(self, storage: StorageService, settlement: SettlementProgram,
                 registry: Optional[SessionRegistry] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.settlement = settlement
        self.registry = registry
        self.clock = clock

    def claim(self, participant_id: str, raid_id: int) -> ClaimResult:
        """
        Claim the reward for a qualified participant.

        Raises:
            RaidNotFound: Unknown raid
            RaidNotActive: Raid was cancelled
            NotQualified: Participant has not qualified (or never joined)
            AlreadyClaimed: Reward was claimed before
            SettlementPending: Claim recorded but funds could not be moved yet
        """
        raid = self.storage.get_raid(raid_id)
        if raid is None:
            raise RaidNotFound(f"Raid {raid_id} not found")
        if raid.status is RaidStatus.CANCELLED:
            raise RaidNotActive(f"Raid {raid_id} was cancelled")

        if not self.storage.try_mark_claimed(raid_id, participant_id, self.clock()):
            record = self.storage.get_participant(raid_id, participant_id)
            if record is not None and record.claimed_reward:
                raise AlreadyClaimed(f"{participant_id} already claimed the reward for raid {raid_id}")
            raise NotQualified(f"{participant_id} has not qualified for raid {raid_id}")

        logger.info(f"Claim recorded for {participant_id} in raid {raid_id}")
        if self.registry is not None:
            self.registry.remove(participant_id, raid_id)
        return self._settle(raid, participant_id)

    def _settle(self, raid: RaidConfig, participant_id: str) -> ClaimResult:
        try:
            reference = self.settlement.settle(participant_id, raid.id, raid.reward_amount, raid.token_mint)
        except SettlementUnavailable as e:
            logger.warning(f"Settlement pending for {participant_id} in raid {raid.id}: {e}")
            self.storage.record_settlement_failure(raid.id, participant_id, str(e))
            raise SettlementPending(
                f"Reward for raid {raid.id} is recorded and will be paid out shortly",
                raid_id=raid.id,
                participant_id=participant_id
            ) from e

        self.storage.record_settlement(raid.id, participant_id, reference)
        return ClaimResult(
            raid_id=raid.id,
            participant_id=participant_id,
            reward_amount=raid.reward_amount,
            token_mint=raid.token_mint,
            settlement_reference=reference,
            settlement_status=SettlementStatus.SETTLED.value
        )

    def retry_pending_settlements(self, limit: int = 100) -> int:
        """Re-attempt payouts for claims left pending; returns how many settled"""
        settled = 0
        for record in self.storage.list_pending_settlements(limit):
            raid = self.storage.get_raid(record.raid_id)
            if raid is None:
                logger.error(f"Pending settlement for {record.participant_id} references missing raid {record.raid_id}")
                continue
            try:
                self._settle(raid, record.participant_id)
                settled += 1
            except SettlementPending:
                continue
        if settled:
            logger.info(f"Settled {settled} pending claims")
        return settled
