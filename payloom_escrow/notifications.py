"""
Notification dispatcher for escrow events.

Services queue notifications only after their database transaction has
committed. A background worker drains the queue and delivers each one to
its channel:

- in_app: a row in the notifications table
- sms: the bulk SMS gateway (dry-run logged when no API key is set)
- admin: a Telegram message to the admin chat

Delivery is best effort. Failures are logged and never reach the caller.
"""

import asyncio
import html
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import requests
from telegram import Bot
from telegram.constants import ParseMode

from payloom_escrow.utils import mask_sensitive_data

logger = logging.getLogger(__name__)


class Channel(str, Enum):
    IN_APP = "in_app"
    SMS = "sms"
    ADMIN = "admin"


@dataclass(frozen=True)
class Notification:
    """
    One message for one recipient on one channel.

    Attributes:
        channel: Delivery channel
        event: Event name, e.g. ``escrow_locked``
        recipient: User id for in_app, phone number for sms, unused for admin
        message: Body text
        title: Short heading (in_app and admin)
        order_id: Related order, if any
        data: Extra structured payload stored with in-app notifications
    """
    channel: Channel
    event: str
    recipient: Optional[str]
    message: str
    title: str = ""
    order_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


def in_app(user_id: Optional[str], event: str, title: str, message: str,
           order_id: Optional[str] = None, **data) -> List[Notification]:
    """In-app notification for a user, or nothing when there is no user."""
    if not user_id:
        return []
    return [Notification(Channel.IN_APP, event, user_id, message, title, order_id, data)]


def sms(phone: Optional[str], event: str, message: str,
        order_id: Optional[str] = None) -> List[Notification]:
    """SMS notification for a phone number, or nothing when there is no phone."""
    if not phone:
        return []
    return [Notification(Channel.SMS, event, phone, message, order_id=order_id)]


def admin_alert(event: str, title: str, message: str, order_id: Optional[str] = None) -> Notification:
    return Notification(Channel.ADMIN, event, None, message, title=title, order_id=order_id)


class SmsClient:
    """Blocking client for the bulk SMS gateway."""

    def __init__(self, api_url: str, api_key: Optional[str], sender_id: str, timeout: int = 30):
        self.api_url = api_url
        self.api_key = api_key
        self.sender_id = sender_id
        self.timeout = timeout
        self.session = requests.Session()

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def send(self, phone: str, message: str) -> Dict[str, Any]:
        """
        Send one SMS.

        Returns:
            Dict with ``success`` and the gateway response (or ``dry_run``)

        Raises:
            requests.RequestException: On network failure
        """
        if not self.api_key:
            logger.info(f"[SMS-DRY-RUN] To: {mask_sensitive_data(phone)}, Message: {message}")
            return {'success': True, 'dry_run': True}

        response = self.session.post(
            self.api_url,
            json={'to': phone, 'message': message, 'from': self.sender_id},
            headers={
                'Content-Type': 'application/json',
                'Authorization': f'Bearer {self.api_key}',
            },
            timeout=self.timeout
        )
        try:
            body = response.json()
        except ValueError:
            body = {'raw': response.text}
        return {'success': response.ok, 'status_code': response.status_code, 'response': body}


class NotificationDispatcher:
    """Queues notifications and delivers them from a background task."""

    def __init__(
        self,
        db,
        sms_client: Optional[SmsClient] = None,
        bot: Optional[Bot] = None,
        admin_chat_id: Optional[str] = None,
        queue_size: int = 1000,
    ):
        self.db = db
        self.sms_client = sms_client
        self.bot = bot
        self.admin_chat_id = admin_chat_id
        self.queue_size = queue_size
        self._queue: Optional[asyncio.Queue] = None
        self._worker_task: Optional[asyncio.Task] = None

        self.stats = {'delivered': 0, 'failed': 0, 'dropped': 0}

    @property
    def is_running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    async def start(self) -> None:
        """Start the delivery worker."""
        if self.is_running:
            logger.warning("Notification dispatcher already running")
            return

        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._worker_task = asyncio.create_task(self._worker(), name='notification-dispatcher')
        logger.info("Notification dispatcher started")

    async def stop(self, drain_timeout: float = 10.0) -> None:
        """Deliver what is queued (up to ``drain_timeout`` seconds), then stop."""
        if not self.is_running:
            return

        try:
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Dropping {self._queue.qsize()} undelivered notifications on shutdown")

        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None
        logger.info("Notification dispatcher stopped")

    def dispatch(self, notification: Notification) -> bool:
        """
        Queue a notification without waiting.

        Returns:
            False when the dispatcher is not running or the queue is full
        """
        if not self.is_running:
            logger.warning(f"Dispatcher not running, dropping {notification.event} notification")
            self.stats['dropped'] += 1
            return False

        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            logger.error(f"Notification queue full, dropping {notification.event} notification")
            self.stats['dropped'] += 1
            return False
        return True

    def dispatch_all(self, notifications: Iterable[Notification]) -> int:
        return sum(1 for notification in notifications if self.dispatch(notification))

    async def _worker(self) -> None:
        while True:
            notification = await self._queue.get()
            try:
                await self.deliver(notification)
            finally:
                self._queue.task_done()

    async def deliver(self, notification: Notification) -> bool:
        """Deliver one notification now. Never raises."""
        try:
            if notification.channel == Channel.IN_APP:
                await self._deliver_in_app(notification)
            elif notification.channel == Channel.SMS:
                await self._deliver_sms(notification)
            elif notification.channel == Channel.ADMIN:
                await self._deliver_admin(notification)
            self.stats['delivered'] += 1
            return True
        except Exception as e:
            self.stats['failed'] += 1
            logger.error(
                f"Failed to deliver {notification.channel.value} notification "
                f"{notification.event} for order {notification.order_id}: {e}",
                exc_info=True
            )
            return False

    async def _deliver_in_app(self, notification: Notification) -> None:
        if not notification.recipient:
            logger.debug(f"No recipient for in-app {notification.event}, skipping")
            return

        async with self.db.session() as store:
            await store.insert_notification(
                user_id=notification.recipient,
                event=notification.event,
                title=notification.title,
                message=notification.message,
                order_id=notification.order_id,
                data=notification.data,
            )

    async def _deliver_sms(self, notification: Notification) -> None:
        if not notification.recipient:
            logger.debug(f"No phone for SMS {notification.event}, skipping")
            return
        if self.sms_client is None:
            logger.info(
                f"[SMS-DRY-RUN] To: {mask_sensitive_data(notification.recipient)}, "
                f"Message: {notification.message}"
            )
            return

        # requests is blocking, keep it off the event loop
        result = await asyncio.to_thread(
            self.sms_client.send, notification.recipient, notification.message
        )
        if result.get('dry_run'):
            status = 'dry_run'
        else:
            status = 'sent' if result.get('success') else 'failed'

        async with self.db.session() as store:
            await store.insert_sms_log(
                phone_number=notification.recipient,
                message=notification.message,
                status=status,
                provider_response=result,
            )

        if status == 'failed':
            logger.warning(
                f"SMS to {mask_sensitive_data(notification.recipient)} failed: {result}"
            )

    async def _deliver_admin(self, notification: Notification) -> None:
        if self.bot is None or not self.admin_chat_id:
            logger.warning(f"[ADMIN ALERT] {notification.title}: {notification.message}")
            return

        text = f"<b>{html.escape(notification.title)}</b>\n\n{html.escape(notification.message)}"
        if notification.order_id:
            text += f"\n\n<b>Order:</b> <code>{html.escape(notification.order_id)}</code>"

        await self.bot.send_message(
            chat_id=self.admin_chat_id,
            text=text,
            parse_mode=ParseMode.HTML
        )
