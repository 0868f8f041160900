"""Web push notification dispatcher and subscription registry.

Sends a notification to every registered endpoint of a user using VAPID,
deleting subscriptions the push service reports as gone (404/410).
The dispatcher is built from an explicit PushConfig; without keys it
refuses to send rather than silently doing nothing.
"""

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass

from pywebpush import WebPushException, webpush
from sqlalchemy.orm import Session

from journalcoach.cli.config import PushConfig
from journalcoach.db.models import PushSubscription, to_iso, utc_now
from journalcoach.errors import (
    ConflictError,
    LimitExceededError,
    PushNotConfigured,
    ValidationError,
    format_code,
)

logger = logging.getLogger(__name__)

BODY_MAX_CHARS = 100
ICON_PATH = "/icons/icon-192.svg"
GONE_STATUS_CODES = (404, 410)


def truncate_body(body: str) -> str:
    """Shorten a notification body to fit on a lock screen."""
    if len(body) > BODY_MAX_CHARS:
        return body[: BODY_MAX_CHARS - 3] + "..."
    return body


@dataclass
class DeliveryReport:
    """Outcome of one fan-out to a user's endpoints."""

    attempted: int = 0
    delivered: int = 0
    pruned: int = 0

    @property
    def any_delivered(self) -> bool:
        return self.delivered > 0


class PushDispatcher:
    """Fans a notification out to all of a user's push subscriptions.

    Each send opens its own session from `session_factory` so it can run
    in a worker thread (pywebpush is blocking).
    """

    def __init__(
        self,
        config: PushConfig,
        session_factory: Callable[[], Session],
        transport: Callable[..., object] = webpush,
    ) -> None:
        self.config = config
        self.session_factory = session_factory
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    def send(
        self,
        user_id: str,
        title: str,
        body: str,
        tag: str | None = None,
        data: dict | None = None,
    ) -> bool:
        """Send to every endpoint of the user.

        Returns:
            True if at least one endpoint accepted the notification.

        Raises:
            PushNotConfigured: If no VAPID keys are configured.
        """
        return self.send_with_report(user_id, title, body, tag, data).any_delivered

    def send_with_report(
        self,
        user_id: str,
        title: str,
        body: str,
        tag: str | None = None,
        data: dict | None = None,
    ) -> DeliveryReport:
        """Like send(), returning per-endpoint counts."""
        if not self.config.is_configured:
            raise PushNotConfigured()

        payload = {
            "title": title,
            "body": truncate_body(body),
            "icon": ICON_PATH,
            "badge": ICON_PATH,
        }
        if tag:
            payload["tag"] = tag
        if data:
            payload["data"] = data
        encoded = json.dumps(payload)

        report = DeliveryReport()
        db = self.session_factory()
        try:
            subscriptions = (
                db.query(PushSubscription)
                .filter(PushSubscription.user_id == user_id)
                .all()
            )
            if not subscriptions:
                logger.info("No push subscriptions for user %s", user_id)
                return report

            for subscription in subscriptions:
                report.attempted += 1
                status = self._deliver(subscription, encoded)
                if status is None:
                    report.delivered += 1
                elif status in GONE_STATUS_CODES:
                    logger.info(
                        "%s endpoint=%s...",
                        format_code("E-4002", status=status),
                        subscription.endpoint[:50],
                    )
                    db.delete(subscription)
                    db.commit()
                    report.pruned += 1
        finally:
            db.close()

        logger.info(
            "Push for user %s: %d/%d delivered, %d pruned",
            user_id,
            report.delivered,
            report.attempted,
            report.pruned,
        )
        return report

    def _deliver(self, subscription: PushSubscription, payload: str) -> int | None:
        """Send to one endpoint.

        Returns:
            None on success, otherwise the HTTP status (0 when unknown).
        """
        try:
            self._transport(
                subscription_info={
                    "endpoint": subscription.endpoint,
                    "keys": subscription.keys,
                },
                data=payload,
                vapid_private_key=self.config.vapid_private_key,
                # pywebpush adds aud/exp to the claims dict, so pass a fresh one
                vapid_claims={"sub": self.config.vapid_subject},
            )
        except WebPushException as e:
            status = e.response.status_code if e.response is not None else 0
            logger.warning(
                "Push failed for %s...: %s (status %s)",
                subscription.endpoint[:50],
                e,
                status,
            )
            return status
        except Exception as e:
            # Network errors from requests, or keys the encoder rejects
            logger.warning(
                "Push failed for %s...: %s", subscription.endpoint[:50], e
            )
            return 0
        return None


class SubscriptionService:
    """Registration of push endpoints for a user's devices."""

    def __init__(self, db: Session, max_per_user: int = 5) -> None:
        self.db = db
        self.max_per_user = max_per_user

    def list_for_user(self, user_id: str) -> list[PushSubscription]:
        return (
            self.db.query(PushSubscription)
            .filter(PushSubscription.user_id == user_id)
            .order_by(PushSubscription.created_at)
            .all()
        )

    def register(
        self, user_id: str, endpoint: str, p256dh: str, auth: str
    ) -> PushSubscription:
        """Register or refresh an endpoint for the user.

        Re-registering an endpoint the user already owns updates its keys.

        Raises:
            ValidationError: If endpoint or keys are missing.
            ConflictError: If the endpoint belongs to another user.
            LimitExceededError: If the user already has the maximum devices.
        """
        if not endpoint or not p256dh or not auth:
            raise ValidationError("endpoint and keys (p256dh, auth) are required")

        now = to_iso(utc_now())
        existing = (
            self.db.query(PushSubscription)
            .filter(PushSubscription.endpoint == endpoint)
            .first()
        )
        if existing is not None:
            if existing.user_id != user_id:
                raise ConflictError("Endpoint is registered to another user")
            existing.p256dh = p256dh
            existing.auth = auth
            existing.updated_at = now
            self.db.commit()
            self.db.refresh(existing)
            return existing

        count = (
            self.db.query(PushSubscription)
            .filter(PushSubscription.user_id == user_id)
            .count()
        )
        if count >= self.max_per_user:
            raise LimitExceededError(
                f"Maximum of {self.max_per_user} push subscriptions per user reached"
            )

        subscription = PushSubscription(
            user_id=user_id,
            endpoint=endpoint,
            p256dh=p256dh,
            auth=auth,
            created_at=now,
            updated_at=now,
        )
        self.db.add(subscription)
        self.db.commit()
        self.db.refresh(subscription)
        logger.info("Registered push endpoint for user %s", user_id)
        return subscription

    def unregister(self, user_id: str, endpoint: str) -> bool:
        """Remove the user's endpoint. Returns False if it was not registered."""
        deleted = (
            self.db.query(PushSubscription)
            .filter(
                PushSubscription.user_id == user_id,
                PushSubscription.endpoint == endpoint,
            )
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted > 0
