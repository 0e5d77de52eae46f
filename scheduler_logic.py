# scheduler_logic.py
import datetime
import logging
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from prometheus_client import Counter

from config import DISPATCH_INTERVAL_SECONDS
from shared.database import CredentialStore, MessageStore
from shared.errors import (
    AuthExpiredError, CredentialMissingError, NotFoundError,
    RemoteRejectedError, StorageError, TransportFailureError, ValidationError
)
from shared.models import (
    AuthExpired, Credential, Delivered, DeliveryResult, RefreshFailure,
    RemoteRejected, ScheduledMessage
)
from shared.slack_client import SlackClient
from shared.utils import generate_message_id, parse_send_at, utcnow

logger = logging.getLogger(__name__)

# === Prometheus metrics ===
MESSAGES_SCHEDULED = Counter('slack_scheduler_messages_scheduled_total', 'Total messages scheduled')
MESSAGES_CANCELED = Counter('slack_scheduler_messages_canceled_total', 'Total scheduled messages canceled')
MESSAGES_DELIVERED = Counter(
    'slack_scheduler_messages_delivered_total', 'Total messages delivered to Slack', ['path']
)
DELIVERY_FAILURES = Counter(
    'slack_scheduler_delivery_failures_total', 'Failed delivery attempts by result kind', ['kind']
)
TOKEN_REFRESHES = Counter(
    'slack_scheduler_token_refreshes_total', 'Access token refresh attempts', ['outcome']
)
DISPATCH_TICKS = Counter('slack_scheduler_dispatch_ticks_total', 'Dispatcher ticks run')


def describe_result(result: DeliveryResult) -> str:
    if isinstance(result, Delivered):
        return f"delivered (ts={result.timestamp})"
    if isinstance(result, AuthExpired):
        return f"auth expired ({result.error})"
    if isinstance(result, RemoteRejected):
        return f"rejected by Slack ({result.reason})"
    return f"transport failure ({result.cause})"


async def deliver_with_refresh(
    client: SlackClient,
    credentials: CredentialStore,
    credential: Credential,
    channel: str,
    text: str
) -> Tuple[DeliveryResult, Credential]:
    """
    Sends a message, refreshing the access token once if Slack reports it expired.

    Args:
        client: Slack client used for delivery and refresh
        credentials: store the refreshed credential is written to
        credential: credential to send with
        channel: destination channel
        text: message body

    Returns:
        (final delivery result, credential to use for the next send)
    """
    result = await client.deliver(channel, text, credential.access_token)
    if not isinstance(result, AuthExpired):
        return result, credential

    if not credential.refresh_token:
        logger.warning(f"⚠️ Access token rejected ({result.error}) and no refresh token is stored")
        return result, credential

    refreshed = await client.refresh(credential.refresh_token)
    if isinstance(refreshed, RefreshFailure):
        TOKEN_REFRESHES.labels(outcome="failure").inc()
        logger.error(f"❌ Slack token refresh failed: {refreshed.reason}")
        return result, credential

    TOKEN_REFRESHES.labels(outcome="success").inc()
    credential = credential.refreshed(refreshed)
    # Persisted before the retry so later sends in this tick see it
    credentials.save(credential)
    logger.info("🔑 Slack access token refreshed")

    result = await client.deliver(channel, text, credential.access_token)
    return result, credential


async def send_now(
    client: SlackClient,
    credentials: CredentialStore,
    channel: Optional[str],
    text: Optional[str]
) -> Delivered:
    """
    Sends a message immediately, bypassing the queue.

    Raises:
        ValidationError: channel or text missing
        CredentialMissingError: nobody has authenticated yet
        AuthExpiredError, RemoteRejectedError, TransportFailureError:
            the final delivery result was not a success
    """
    if not channel or not text:
        raise ValidationError("Channel and text are required.")

    credential = credentials.load()
    if credential is None:
        raise CredentialMissingError("No Slack token found. Please authenticate first.")

    result, _ = await deliver_with_refresh(client, credentials, credential, channel, text)

    if isinstance(result, Delivered):
        MESSAGES_DELIVERED.labels(path="immediate").inc()
        logger.info(f"✅ Message sent to {channel}, ts={result.timestamp}")
        return result

    DELIVERY_FAILURES.labels(kind=type(result).__name__).inc()
    logger.warning(f"❌ Immediate send to {channel} failed: {describe_result(result)}")
    if isinstance(result, AuthExpired):
        raise AuthExpiredError(result.error)
    if isinstance(result, RemoteRejected):
        raise RemoteRejectedError(result.reason)
    raise TransportFailureError(result.cause)


# === Queue operations ===

def create_scheduled_message(
    messages: MessageStore,
    channel: Optional[str],
    text: Optional[str],
    send_at: Union[str, datetime.datetime, None]
) -> ScheduledMessage:
    if not channel or not text or not send_at:
        raise ValidationError("channel, text, and sendAt (ISO string) required.")

    queue = messages.load()
    message = ScheduledMessage(
        id=generate_message_id(existing={m.id for m in queue}),
        channel=channel,
        text=text,
        send_at=parse_send_at(send_at),
    )
    queue.append(message)
    messages.save(queue)

    MESSAGES_SCHEDULED.inc()
    logger.info(f"🗓️ Message {message.id} scheduled for {message.channel} at {message.send_at.isoformat()}")
    return message


def list_pending_messages(messages: MessageStore) -> List[ScheduledMessage]:
    return [m for m in messages.load() if not m.sent]


def cancel_scheduled_message(messages: MessageStore, msg_id: str) -> None:
    """Removes a message that has not been sent yet."""
    queue = messages.load()
    for index, message in enumerate(queue):
        if message.id == msg_id and not message.sent:
            del queue[index]
            messages.save(queue)
            MESSAGES_CANCELED.inc()
            logger.info(f"⏹️ Scheduled message {msg_id} canceled")
            return
    raise NotFoundError("Message not found or already sent.")


def ingest_credential(credentials: CredentialStore, credential: Credential) -> None:
    """Stores the credential produced by the OAuth exchange, replacing any previous one."""
    credentials.save(credential)
    team = (credential.team or {}).get("name") or (credential.team or {}).get("id")
    logger.info(f"✅ Slack authentication stored for team {team or '?'}")


# === Dispatcher ===

class Dispatcher:
    """
    Periodically delivers due scheduled messages.

    Each tick loads the credential and the queue, sends every message whose
    send time has passed (in queue order) and persists the sent flags once.
    Failed sends stay pending and are retried on the next tick.
    """

    JOB_ID = "dispatch_scheduled_messages"

    def __init__(
        self,
        messages: MessageStore,
        credentials: CredentialStore,
        client: SlackClient,
        interval: float = DISPATCH_INTERVAL_SECONDS,
        clock: Callable[[], datetime.datetime] = utcnow
    ):
        self.messages = messages
        self.credentials = credentials
        self.client = client
        self.interval = interval
        self._clock = clock
        self._scheduler: Optional[AsyncIOScheduler] = None
        self.last_tick_at: Optional[datetime.datetime] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self):
        """Schedules `tick` on the running event loop every `interval` seconds."""
        if self.running:
            return
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._scheduler.add_job(
            self.tick,
            "interval",
            seconds=self.interval,
            id=self.JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._scheduler.start()
        logger.info(f"🚀 Dispatcher started, checking every {self.interval:g}s")

    def shutdown(self):
        if not self.running:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Dispatcher stopped")

    async def tick(self) -> int:
        """
        Runs one scan-and-deliver cycle.

        Returns:
            Number of messages delivered during this tick
        """
        DISPATCH_TICKS.inc()
        now = self._clock()
        self.last_tick_at = now

        try:
            credential = self.credentials.load()
            if credential is None:
                logger.debug("No Slack credential stored yet, skipping tick")
                return 0
            queue = self.messages.load()
        except StorageError as e:
            logger.error(f"❌ Storage unavailable, skipping tick: {e}")
            return 0

        delivered_ids = set()
        for message in queue:
            if not message.is_due(now):
                continue
            try:
                result, credential = await deliver_with_refresh(
                    self.client, self.credentials, credential, message.channel, message.text
                )
            except Exception as e:
                logger.exception(f"❌ Unexpected error delivering scheduled message {message.id}: {e}")
                # A refresh may have been stored before the failure
                try:
                    credential = self.credentials.load() or credential
                except StorageError as load_error:
                    logger.error(f"❌ Could not reload Slack credential: {load_error}")
                continue

            if isinstance(result, Delivered):
                delivered_ids.add(message.id)
                MESSAGES_DELIVERED.labels(path="scheduled").inc()
                logger.info(
                    f"✅ Scheduled message {message.id} sent to {message.channel} "
                    f"at {message.send_at.isoformat()}"
                )
            else:
                DELIVERY_FAILURES.labels(kind=type(result).__name__).inc()
                logger.warning(
                    f"❌ Failed to send scheduled message {message.id}: {describe_result(result)}. "
                    f"Will retry next tick."
                )

        if not delivered_ids:
            return 0

        try:
            self._mark_sent(delivered_ids)
        except StorageError as e:
            logger.error(f"❌ Could not persist sent flags for {sorted(delivered_ids)}: {e}")
            return 0
        return len(delivered_ids)

    def _mark_sent(self, ids: Iterable[str]):
        # Re-read so messages created or canceled while this tick awaited Slack survive the write
        ids = set(ids)
        latest = self.messages.load()
        for message in latest:
            if message.id in ids:
                message.sent = True
        self.messages.save(latest)


def health_check(
    messages: MessageStore,
    credentials: CredentialStore,
    now: Optional[datetime.datetime] = None
) -> Dict:
    """
    Summarizes the state of the queue.

    Returns:
        Dict with status, counts and the next five pending messages;
        status is "error" when the stores cannot be read
    """
    now = now or utcnow()
    try:
        queue = messages.load()
        authenticated = credentials.load() is not None
    except StorageError as e:
        logger.error(f"❌ Health check failed: {e}")
        return {"status": "error", "error": str(e)}

    pending = [m for m in queue if not m.sent]
    overdue = [m for m in pending if m.send_at <= now]
    return {
        "status": "ok",
        "authenticated": authenticated,
        "pending_count": len(pending),
        "sent_count": len(queue) - len(pending),
        "overdue_count": len(overdue),
        "next_messages": [
            m.to_dict() for m in sorted(pending, key=lambda m: m.send_at)[:5]
        ],
    }
