"""Database storage service for raids, participants and platform accounts"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from raid_engine.config import settings
from raid_engine.db import Database
from raid_engine.models.db import PlatformAccount, Raid, RaidParticipant
from raid_engine.models.raid import (
    AccessContext, ParticipantRecord, Platform, RaidConfig, RaidCounts, RaidStatus, SettlementStatus
)
from raid_engine.utils.timeutils import as_utc

logger = logging.getLogger(__name__)

def _to_raid_config(row: Raid) -> RaidConfig:
    return RaidConfig(
        id=row.id,
        track_id=row.track_id,
        platform=Platform(row.platform),
        required_listen_seconds=row.required_listen_seconds,
        participant_goal=row.participant_goal,
        reward_amount=float(row.reward_amount),
        status=RaidStatus(row.status),
        expires_at=as_utc(row.expires_at),
        token_mint=row.token_mint or 'SOL',
        premium_only=bool(row.premium_only),
        max_participants=row.max_participants,
        track_title=row.track_title,
        track_artist=row.track_artist,
        completed_at=as_utc(row.completed_at)
    )

def _to_participant_record(row: RaidParticipant) -> ParticipantRecord:
    return ParticipantRecord(
        raid_id=row.raid_id,
        participant_id=row.participant_id,
        tracking_active=bool(row.tracking_active),
        is_listening=bool(row.is_listening),
        total_listen_duration=int(row.total_listen_duration or 0),
        last_checked_at=as_utc(row.last_checked_at),
        qualified=bool(row.qualified),
        qualified_at=as_utc(row.qualified_at),
        claimed_reward=bool(row.claimed_reward),
        claimed_at=as_utc(row.claimed_at),
        claim_tx_reference=row.claim_tx_reference,
        settlement_status=SettlementStatus(row.settlement_status or 'none'),
        settlement_attempts=int(row.settlement_attempts or 0),
        last_notification_message_ref=row.last_notification_message_ref,
        last_notified_at=as_utc(row.last_notified_at),
        joined_at=as_utc(row.joined_at)
    )

class StorageService:
    """Handles all database operations for the engine"""

    def __init__(self, database: Database):
        self.database = database

    def _participant_query(self, session, raid_id: int, participant_id: str):
        return session.query(RaidParticipant).filter(
            and_(
                RaidParticipant.raid_id == raid_id,
                RaidParticipant.participant_id == participant_id
            )
        )

    # --- Raids ---

    def create_raid(self, track_id: str, platform: Platform, participant_goal: int,
                    reward_amount: float, expires_at: datetime,
                    required_listen_seconds: Optional[int] = None, token_mint: str = 'SOL',
                    premium_only: bool = False, max_participants: Optional[int] = None,
                    track_title: Optional[str] = None, track_artist: Optional[str] = None) -> RaidConfig:
        """Insert a raid in ACTIVE state (used by the sponsor flow and tooling)"""
        try:
            with self.database.session() as session:
                raid = Raid(
                    track_id=track_id,
                    platform=Platform(platform).value,
                    participant_goal=participant_goal,
                    reward_amount=reward_amount,
                    expires_at=expires_at,
                    required_listen_seconds=required_listen_seconds or settings.DEFAULT_REQUIRED_LISTEN_SECONDS,
                    token_mint=token_mint,
                    premium_only=premium_only,
                    max_participants=max_participants,
                    track_title=track_title,
                    track_artist=track_artist,
                    status=RaidStatus.ACTIVE.value
                )
                session.add(raid)
                session.flush()
                logger.info(f"Created raid {raid.id} for {raid.platform} track {track_id}")
                return _to_raid_config(raid)
        except SQLAlchemyError as e:
            logger.error(f"Database error creating raid for track {track_id}: {e}")
            raise

    def get_raid(self, raid_id: int) -> Optional[RaidConfig]:
        try:
            with self.database.session() as session:
                raid = session.get(Raid, raid_id)
                return _to_raid_config(raid) if raid else None
        except SQLAlchemyError as e:
            logger.error(f"Database error loading raid {raid_id}: {e}")
            raise

    def list_active_raids(self) -> List[RaidConfig]:
        try:
            with self.database.session() as session:
                rows = session.query(Raid).filter(Raid.status == RaidStatus.ACTIVE.value).all()
                return [_to_raid_config(row) for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"Database error listing active raids: {e}")
            raise

    def raid_counts(self, raid_id: int) -> RaidCounts:
        """Joined and qualified participant counts for a raid"""
        try:
            with self.database.session() as session:
                joined = session.query(func.count(RaidParticipant.id)).filter(
                    RaidParticipant.raid_id == raid_id
                ).scalar() or 0
                qualified = session.query(func.count(RaidParticipant.id)).filter(
                    and_(
                        RaidParticipant.raid_id == raid_id,
                        RaidParticipant.qualified.is_(True)
                    )
                ).scalar() or 0
                return RaidCounts(joined=int(joined), qualified=int(qualified))
        except SQLAlchemyError as e:
            logger.error(f"Database error counting participants for raid {raid_id}: {e}")
            raise

    def count_qualified(self, raid_id: int) -> int:
        return self.raid_counts(raid_id).qualified

    def transition_raid(self, raid_id: int, from_status: RaidStatus, to_status: RaidStatus,
                        now: datetime) -> bool:
        """
        Move a raid between states with a single conditional update.

        Returns:
            True only for the caller whose update changed the row
        """
        try:
            with self.database.session() as session:
                values = {Raid.status: to_status.value}
                if to_status is RaidStatus.COMPLETED:
                    values[Raid.completed_at] = now
                changed = session.query(Raid).filter(
                    and_(Raid.id == raid_id, Raid.status == from_status.value)
                ).update(values, synchronize_session=False)
                if changed:
                    # Terminal raids keep no tracked participants
                    session.query(RaidParticipant).filter(
                        and_(
                            RaidParticipant.raid_id == raid_id,
                            RaidParticipant.tracking_active.is_(True)
                        )
                    ).update({
                        RaidParticipant.tracking_active: False,
                        RaidParticipant.is_listening: False
                    }, synchronize_session=False)
                return changed == 1
        except SQLAlchemyError as e:
            logger.error(f"Database error moving raid {raid_id} {from_status.value} -> {to_status.value}: {e}")
            raise

    # --- Participants ---

    def get_participant(self, raid_id: int, participant_id: str) -> Optional[ParticipantRecord]:
        try:
            with self.database.session() as session:
                row = self._participant_query(session, raid_id, participant_id).first()
                return _to_participant_record(row) if row else None
        except SQLAlchemyError as e:
            logger.error(f"Database error loading participant {participant_id} in raid {raid_id}: {e}")
            raise

    def list_participants(self, raid_id: int, qualified_only: bool = False) -> List[ParticipantRecord]:
        try:
            with self.database.session() as session:
                query = session.query(RaidParticipant).filter(RaidParticipant.raid_id == raid_id)
                if qualified_only:
                    query = query.filter(RaidParticipant.qualified.is_(True))
                rows = query.order_by(RaidParticipant.qualified_at.asc(), RaidParticipant.id.asc()).all()
                return [_to_participant_record(row) for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"Database error listing participants for raid {raid_id}: {e}")
            raise

    def join_participant(self, raid_id: int, participant_id: str, now: datetime) -> ParticipantRecord:
        """
        Create the participant record, or reset progress of an unqualified one.

        Qualified records are never reset.
        """
        try:
            with self.database.session() as session:
                row = self._participant_query(session, raid_id, participant_id).first()
                if row is None:
                    row = RaidParticipant(
                        raid_id=raid_id,
                        participant_id=participant_id,
                        joined_at=now,
                        tracking_active=True,
                        is_listening=False,
                        total_listen_duration=0,
                        last_checked_at=now
                    )
                    session.add(row)
                    session.flush()
                    logger.info(f"Participant {participant_id} joined raid {raid_id}")
                    return _to_participant_record(row)
        except IntegrityError:
            # Lost a concurrent create for the same pair; fall through to reset
            logger.info(f"Participant {participant_id} already present in raid {raid_id}, resetting progress")
        except SQLAlchemyError as e:
            logger.error(f"Database error joining participant {participant_id} to raid {raid_id}: {e}")
            raise

        try:
            with self.database.session() as session:
                self._participant_query(session, raid_id, participant_id).filter(
                    RaidParticipant.qualified.is_(False)
                ).update({
                    RaidParticipant.tracking_active: True,
                    RaidParticipant.is_listening: False,
                    RaidParticipant.total_listen_duration: 0,
                    RaidParticipant.last_checked_at: now
                }, synchronize_session=False)
                row = self._participant_query(session, raid_id, participant_id).one()
                logger.info(f"Participant {participant_id} rejoined raid {raid_id}")
                return _to_participant_record(row)
        except SQLAlchemyError as e:
            logger.error(f"Database error resetting participant {participant_id} in raid {raid_id}: {e}")
            raise

    def save_progress(self, raid_id: int, participant_id: str, is_listening: bool,
                      total_listen_duration: int, now: datetime) -> bool:
        """Persist qualifying state; a qualified record is left untouched"""
        try:
            with self.database.session() as session:
                changed = self._participant_query(session, raid_id, participant_id).filter(
                    RaidParticipant.qualified.is_(False)
                ).update({
                    RaidParticipant.is_listening: is_listening,
                    RaidParticipant.total_listen_duration: total_listen_duration,
                    RaidParticipant.last_checked_at: now
                }, synchronize_session=False)
                return changed == 1
        except SQLAlchemyError as e:
            logger.error(f"Database error saving progress for {participant_id} in raid {raid_id}: {e}")
            raise

    def mark_qualified(self, raid_id: int, participant_id: str, total_listen_duration: int,
                       now: datetime) -> bool:
        """
        Set qualified/qualified_at exactly once.

        Returns:
            True if this call qualified the participant, False if already qualified
        """
        try:
            with self.database.session() as session:
                changed = self._participant_query(session, raid_id, participant_id).filter(
                    RaidParticipant.qualified.is_(False)
                ).update({
                    RaidParticipant.qualified: True,
                    RaidParticipant.qualified_at: now,
                    RaidParticipant.is_listening: True,
                    RaidParticipant.total_listen_duration: total_listen_duration,
                    RaidParticipant.last_checked_at: now,
                    RaidParticipant.tracking_active: False
                }, synchronize_session=False)
                return changed == 1
        except SQLAlchemyError as e:
            logger.error(f"Database error qualifying {participant_id} in raid {raid_id}: {e}")
            raise

    def stop_tracking(self, raid_id: int, participant_id: str, now: datetime) -> None:
        """Record that tracking ended without qualification"""
        try:
            with self.database.session() as session:
                self._participant_query(session, raid_id, participant_id).update({
                    RaidParticipant.tracking_active: False,
                    RaidParticipant.is_listening: False,
                    RaidParticipant.last_checked_at: now
                }, synchronize_session=False)
        except SQLAlchemyError as e:
            logger.error(f"Database error stopping tracking for {participant_id} in raid {raid_id}: {e}")
            raise

    def list_tracked_participants(self) -> List[Tuple[ParticipantRecord, RaidConfig]]:
        """Participants that had a live session on an ACTIVE raid"""
        try:
            with self.database.session() as session:
                rows = session.query(RaidParticipant, Raid).join(
                    Raid, Raid.id == RaidParticipant.raid_id
                ).filter(
                    and_(
                        Raid.status == RaidStatus.ACTIVE.value,
                        RaidParticipant.tracking_active.is_(True),
                        RaidParticipant.qualified.is_(False)
                    )
                ).all()
                return [(_to_participant_record(p), _to_raid_config(r)) for p, r in rows]
        except SQLAlchemyError as e:
            logger.error(f"Database error listing tracked participants: {e}")
            raise

    def delete_inactive_participants(self, cutoff: datetime) -> int:
        """
        Delete joiners of ACTIVE raids that are untracked, unqualified and
        have not been checked since cutoff.
        """
        try:
            with self.database.session() as session:
                active_raids = select(Raid.id).where(Raid.status == RaidStatus.ACTIVE.value)
                deleted = session.query(RaidParticipant).filter(
                    and_(
                        RaidParticipant.raid_id.in_(active_raids),
                        RaidParticipant.tracking_active.is_(False),
                        RaidParticipant.is_listening.is_(False),
                        RaidParticipant.qualified.is_(False),
                        RaidParticipant.claimed_reward.is_(False),
                        or_(
                            RaidParticipant.last_checked_at < cutoff,
                            and_(
                                RaidParticipant.last_checked_at.is_(None),
                                RaidParticipant.joined_at < cutoff
                            )
                        )
                    )
                ).delete(synchronize_session=False)
                return int(deleted or 0)
        except SQLAlchemyError as e:
            logger.error(f"Database error deleting inactive participants: {e}")
            raise

    # --- Claims and settlement ---

    def try_mark_claimed(self, raid_id: int, participant_id: str, now: datetime) -> bool:
        """
        Atomic compare-and-set of claimed_reward false -> true.

        Only a qualified, unclaimed record matches, so concurrent callers see
        exactly one True.
        """
        try:
            with self.database.session() as session:
                changed = self._participant_query(session, raid_id, participant_id).filter(
                    and_(
                        RaidParticipant.qualified.is_(True),
                        RaidParticipant.claimed_reward.is_(False)
                    )
                ).update({
                    RaidParticipant.claimed_reward: True,
                    RaidParticipant.claimed_at: now,
                    RaidParticipant.settlement_status: SettlementStatus.PENDING.value,
                    RaidParticipant.tracking_active: False
                }, synchronize_session=False)
                return changed == 1
        except SQLAlchemyError as e:
            logger.error(f"Database error claiming for {participant_id} in raid {raid_id}: {e}")
            raise

    def record_settlement(self, raid_id: int, participant_id: str, reference: str) -> None:
        try:
            with self.database.session() as session:
                self._participant_query(session, raid_id, participant_id).filter(
                    RaidParticipant.claimed_reward.is_(True)
                ).update({
                    RaidParticipant.claim_tx_reference: reference,
                    RaidParticipant.settlement_status: SettlementStatus.SETTLED.value,
                    RaidParticipant.settlement_attempts: RaidParticipant.settlement_attempts + 1,
                    RaidParticipant.last_settlement_error: None
                }, synchronize_session=False)
        except SQLAlchemyError as e:
            logger.error(f"Database error recording settlement {reference} for {participant_id}: {e}")
            raise

    def record_settlement_failure(self, raid_id: int, participant_id: str, error: str) -> None:
        try:
            with self.database.session() as session:
                self._participant_query(session, raid_id, participant_id).update({
                    RaidParticipant.settlement_attempts: RaidParticipant.settlement_attempts + 1,
                    RaidParticipant.last_settlement_error: error[:500]
                }, synchronize_session=False)
        except SQLAlchemyError as e:
            logger.error(f"Database error recording settlement failure for {participant_id}: {e}")
            raise

    def list_pending_settlements(self, limit: int = 100) -> List[ParticipantRecord]:
        try:
            with self.database.session() as session:
                rows = session.query(RaidParticipant).filter(
                    and_(
                        RaidParticipant.claimed_reward.is_(True),
                        RaidParticipant.settlement_status == SettlementStatus.PENDING.value
                    )
                ).order_by(RaidParticipant.claimed_at.asc()).limit(limit).all()
                return [_to_participant_record(row) for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"Database error listing pending settlements: {e}")
            raise

    # --- Notifications ---

    def save_notification_ref(self, raid_id: int, participant_id: str, message_ref: str,
                              now: datetime) -> None:
        try:
            with self.database.session() as session:
                self._participant_query(session, raid_id, participant_id).update({
                    RaidParticipant.last_notification_message_ref: message_ref,
                    RaidParticipant.last_notified_at: now
                }, synchronize_session=False)
        except SQLAlchemyError as e:
            logger.error(f"Database error saving notification ref for {participant_id}: {e}")
            raise

    # --- Platform accounts ---

    def get_platform_account(self, participant_id: str, platform: Platform) -> Optional[AccessContext]:
        try:
            with self.database.session() as session:
                row = session.query(PlatformAccount).filter_by(
                    participant_id=participant_id, platform=Platform(platform).value
                ).first()
                if row is None:
                    return None
                return AccessContext(
                    participant_id=row.participant_id,
                    platform=Platform(row.platform),
                    access_token=row.access_token,
                    platform_user_id=row.platform_user_id,
                    is_premium=bool(row.is_premium),
                    expires_at=as_utc(row.token_expires_at)
                )
        except SQLAlchemyError as e:
            logger.error(f"Database error loading {platform} account for {participant_id}: {e}")
            raise

    def upsert_platform_account(self, participant_id: str, platform: Platform,
                                access_token: Optional[str], token_expires_at: Optional[datetime],
                                platform_user_id: Optional[str] = None, is_premium: bool = False) -> None:
        """Store authorization written by the OAuth flow"""
        try:
            with self.database.session() as session:
                row = session.query(PlatformAccount).filter_by(
                    participant_id=participant_id, platform=Platform(platform).value
                ).first()
                if row is None:
                    row = PlatformAccount(participant_id=participant_id, platform=Platform(platform).value)
                    session.add(row)
                row.access_token = access_token
                row.token_expires_at = token_expires_at
                row.platform_user_id = platform_user_id
                row.is_premium = is_premium
        except SQLAlchemyError as e:
            logger.error(f"Database error storing {platform} account for {participant_id}: {e}")
            raise
