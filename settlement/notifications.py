from typing import Optional, Protocol

import httpx
import structlog

from .storage import InMemoryStorage


class Notifier(Protocol):
    """Delivers a templated message to a user (e-mail, WhatsApp, ...)."""

    def send(self, user_id: str, subject: str, body: str) -> None:
        ...


class LoggingNotifier:
    """Default notifier that logs messages in lieu of an external integration."""

    def __init__(self) -> None:
        self._logger = structlog.get_logger(__name__)

    def send(self, user_id: str, subject: str, body: str) -> None:
        self._logger.info("notification_logged", user_id=user_id, subject=subject)


class EmailWebhookNotifier:
    """Posts e-mails to a send-email endpoint, addressed by the user's stored e-mail."""

    def __init__(
        self,
        storage: InMemoryStorage,
        url: str,
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ):
        self.storage = storage
        self.url = url
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout)
        self._logger = structlog.get_logger(__name__)

    def send(self, user_id: str, subject: str, body: str) -> None:
        email = self.storage.get(f"users/{user_id}/email")
        if not email or "@" not in email:
            self._logger.warning("notification_skipped_no_email", user_id=user_id)
            return
        response = self.client.post(
            self.url,
            json={"to": email, "subject": subject, "htmlContent": body},
        )
        response.raise_for_status()

    def close(self) -> None:
        """Release the HTTP connection pool if this notifier created it."""
        if self._owns_client:
            self.client.close()


def notify_safely(notifier: Notifier, user_id: str, subject: str, body: str) -> bool:
    """Send a notification; a failure is logged and never propagated."""
    try:
        notifier.send(user_id, subject, body)
        return True
    except Exception:
        structlog.get_logger(__name__).exception(
            "notification_failed", user_id=user_id, subject=subject
        )
        return False
