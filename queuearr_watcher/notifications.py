"""
Notifications for Queuearr Watcher
Message templates keyed by status and the "deliver to user" capability.
Delivery itself (push subscriptions, transport) belongs to the host.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, List, Dict, Protocol

import aiohttp

from .exceptions import NotificationError

logger = logging.getLogger(__name__)


@dataclass
class NotificationPayload:
    title: str
    body: str
    tag: str

    def to_dict(self) -> dict:
        return {"title": self.title, "body": self.body, "tag": self.tag}


@dataclass
class NotificationResult:
    """Deliveries made for one user (one per device subscription)."""
    sent: int = 0
    failed: int = 0


class Notifier(Protocol):
    async def send_to_user(
        self, user_id: str, payload: NotificationPayload
    ) -> NotificationResult: ...


# title template, body
NOTIFICATION_MESSAGES: Dict[str, tuple] = {
    "downloading": ("{title} started downloading", "Your download is now active"),
    "failed": ("{title} download failed", "The download encountered an error"),
    "error": ("{title} download failed", "The download encountered an error"),
    "stalled": ("{title} download is stalled", "No peers are sending data"),
    "importing": ("{title} is being imported", "Almost ready!"),
    "warning": ("{title} has a warning", "Check the queue for details"),
}

READY_MESSAGE = ("{title} is ready!", "Your download has completed")


def status_payload(status: str, title: str, download_id: int) -> Optional[NotificationPayload]:
    """Payload for a status transition, or None when the status has no template."""
    template = NOTIFICATION_MESSAGES.get(str(getattr(status, "value", status)))
    if template is None:
        return None
    title_template, body = template
    return NotificationPayload(
        title=title_template.format(title=title),
        body=body,
        tag=f"download-status-{download_id}",
    )


def ready_payload(title: str, download_id: int) -> NotificationPayload:
    title_template, body = READY_MESSAGE
    return NotificationPayload(
        title=title_template.format(title=title),
        body=body,
        tag=f"download-complete-{download_id}",
    )


async def notify_users(
    notifier: Notifier,
    user_ids: List[str],
    payload: NotificationPayload,
) -> NotificationResult:
    """
    Send one payload to every user concurrently.

    A failing send is logged and counted; it never stops the other sends.
    """
    if not user_ids:
        return NotificationResult()

    results = await asyncio.gather(
        *(notifier.send_to_user(user_id, payload) for user_id in user_ids),
        return_exceptions=True,
    )

    total = NotificationResult()
    for user_id, result in zip(user_ids, results):
        if isinstance(result, BaseException):
            total.failed += 1
            logger.warning(
                f"Notification '{payload.tag}' to {user_id} failed: {result}",
                extra={"user_id": user_id},
            )
            continue
        total.sent += result.sent
        total.failed += result.failed
    return total


class HttpNotifier:
    """
    Hands notifications to a host delivery endpoint.

    POSTs ``{"userId", "title", "body", "tag"}`` as JSON; the endpoint may answer
    with ``{"sent": n, "failed": m}``, otherwise a 2xx counts as one delivery.
    """

    def __init__(self, url: str, token: Optional[str] = None, timeout: float = 10.0):
        self.url = url
        self.token = token
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            headers = {"Content-Type": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers=headers,
            )
        return self._session

    async def send_to_user(
        self, user_id: str, payload: NotificationPayload
    ) -> NotificationResult:
        session = await self._get_session()
        body = {"userId": user_id, **payload.to_dict()}

        try:
            async with session.post(self.url, json=body) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise NotificationError(
                        f"Delivery endpoint returned HTTP {response.status}",
                        user_id=user_id,
                        details=text[:200],
                    )
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NotificationError(
                "Delivery endpoint unreachable", user_id=user_id, details=str(e)
            ) from e

        if isinstance(data, dict) and "sent" in data:
            return NotificationResult(
                sent=int(data.get("sent") or 0), failed=int(data.get("failed") or 0)
            )
        return NotificationResult(sent=1)

    async def close(self):
        """Close the client connection."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None


class LogNotifier:
    """Writes notifications to the log instead of delivering them."""

    async def send_to_user(
        self, user_id: str, payload: NotificationPayload
    ) -> NotificationResult:
        logger.info(
            f"Notify {user_id}: {payload.title} - {payload.body}",
            extra={"user_id": user_id},
        )
        return NotificationResult(sent=1)

    async def close(self):
        pass
