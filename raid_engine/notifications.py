"""Best-effort participant notifications"""
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from raid_engine.models.raid import RaidConfig
from raid_engine.services.storage import StorageService
from raid_engine.session_registry import TrackingSession
from raid_engine.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

PROGRESS_BAR_LENGTH = 10

class StaleMessageRef(Exception):
    """Raised by a channel when a prior message can no longer be edited"""

@dataclass
class NotificationContent:
    """Channel-agnostic message body"""
    kind: str
    title: str
    description: str
    fields: List[Tuple[str, str]] = field(default_factory=list)

class NotificationChannel(ABC):
    """Delivers messages to participants (chat DM, push, ...)"""

    @abstractmethod
    def send_or_update(self, participant_id: str, content: NotificationContent,
                       prior_message_ref: Optional[str] = None) -> str:
        """
        Edit prior_message_ref if given, otherwise send a new message.

        Returns:
            Reference of the message now holding the content

        Raises:
            StaleMessageRef: If prior_message_ref cannot be edited
        """

class LoggingNotificationChannel(NotificationChannel):
    """Writes notifications to the log; used when no chat channel is wired"""

    def send_or_update(self, participant_id: str, content: NotificationContent,
                       prior_message_ref: Optional[str] = None) -> str:
        message_ref = prior_message_ref or uuid.uuid4().hex
        logger.info(f"[{content.kind}] to {participant_id} ({message_ref}): {content.title} - {content.description}")
        return message_ref

def progress_bar(seconds: float, required: int, length: int = PROGRESS_BAR_LENGTH) -> str:
    """Render e.g. '[█████░░░░░] 50%'."""
    percentage = min(seconds / required * 100, 100) if required > 0 else 100
    filled = round(percentage / 100 * length)
    return f"[{'█' * filled}{'░' * (length - filled)}] {round(percentage)}%"

def _track_label(session: TrackingSession) -> str:
    return session.track_title or session.track_id

def progress_content(session: TrackingSession) -> NotificationContent:
    seconds = session.whole_seconds
    if not session.is_currently_listening:
        description = f"Not currently playing. Start playing {_track_label(session)} to continue earning."
    else:
        description = f"Listening to {_track_label(session)}: {seconds}/{session.required_seconds} seconds"
    return NotificationContent(
        kind='progress',
        title=f"Raid progress: {_track_label(session)}",
        description=description,
        fields=[
            ('Progress', progress_bar(seconds, session.required_seconds)),
            ('Potential reward', f"{session.reward_amount} {session.token_mint}"),
            ('Required time', f"{session.required_seconds} seconds"),
            ('Platform', f"{session.platform.value.title()} {'Premium' if session.is_premium_tier else 'Free'}")
        ]
    )

def qualified_content(session: TrackingSession) -> NotificationContent:
    return NotificationContent(
        kind='qualified',
        title='Qualified!',
        description=(f"You listened to {_track_label(session)} for {session.whole_seconds} seconds. "
                     f"Claim your reward once you're ready."),
        fields=[('Reward', f"{session.reward_amount} {session.token_mint}")]
    )

def reauthorize_content(session: TrackingSession) -> NotificationContent:
    return NotificationContent(
        kind='reauthorize',
        title=f"Reconnect your {session.platform.value.title()} account",
        description=("We could not verify your playback because your authorization expired. "
                     "Log in again and rejoin the raid to keep earning.")
    )

def raid_completed_content(raid: RaidConfig) -> NotificationContent:
    return NotificationContent(
        kind='raid_completed',
        title='Raid complete!',
        description=(f"{raid.participant_goal} listeners completed the raid for "
                     f"{raid.track_title or raid.track_id}. Claim your reward now."),
        fields=[('Reward', f"{raid.reward_amount} {raid.token_mint}")]
    )

class NotificationDispatcher:
    """
    Keeps one persistent message per participant per raid up to date.

    Delivery failures are logged and dropped; they never touch engine state.
    """

    def __init__(self, storage: StorageService, channel: NotificationChannel,
                 min_interval_seconds: float = 2.0, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.channel = channel
        self.min_interval_seconds = min_interval_seconds
        self.clock = clock

    def progress(self, session: TrackingSession) -> Optional[str]:
        return self._deliver(session.raid_id, session.participant_id, progress_content(session), throttle=True)

    def qualified(self, session: TrackingSession) -> Optional[str]:
        return self._deliver(session.raid_id, session.participant_id, qualified_content(session))

    def reauthorize(self, session: TrackingSession) -> Optional[str]:
        return self._deliver(session.raid_id, session.participant_id, reauthorize_content(session))

    def raid_completed(self, raid: RaidConfig) -> int:
        """Tell every qualified participant the raid is done; returns deliveries made"""
        try:
            participants = self.storage.list_participants(raid.id, qualified_only=True)
        except Exception as e:
            logger.warning(f"Could not load winners of raid {raid.id} for notification: {e}")
            return 0
        content = raid_completed_content(raid)
        delivered = 0
        for participant in participants:
            if self._deliver(raid.id, participant.participant_id, content):
                delivered += 1
        return delivered

    def _deliver(self, raid_id: int, participant_id: str, content: NotificationContent,
                 throttle: bool = False) -> Optional[str]:
        try:
            record = self.storage.get_participant(raid_id, participant_id)
            if record is None:
                return None
            now = self.clock()
            if throttle and record.last_notified_at is not None:
                since = (now - record.last_notified_at).total_seconds()
                if since < self.min_interval_seconds:
                    return None

            prior = record.last_notification_message_ref
            try:
                message_ref = self.channel.send_or_update(participant_id, content, prior)
            except StaleMessageRef:
                logger.info(f"Message {prior} for {participant_id} is gone, sending a new one")
                message_ref = self.channel.send_or_update(participant_id, content, None)

            self.storage.save_notification_ref(raid_id, participant_id, message_ref, now)
            return message_ref
        except Exception as e:
            logger.warning(f"Failed to send {content.kind} notification to {participant_id} for raid {raid_id}: {e}")
            return None
