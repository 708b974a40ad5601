"""Best-effort side effects: realtime broadcast, discrepancy notices, link history.

Every call through ``Outbox`` is caught and logged. A failure here never
reaches the caller of the primary mutation.
"""
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from shared.models import DocumentLink
from shared.schemas import BroadcastEvent, DiscrepancyNotice

logger = logging.getLogger(__name__)


class RedisBroadcaster:
    """Publishes order state changes on a redis pub/sub channel."""

    def __init__(self, redis_client, channel: str = "orders-updates"):
        self.redis_client = redis_client
        self.channel = channel

    def publish(self, event: BroadcastEvent) -> None:
        receivers = self.redis_client.publish(self.channel, event.model_dump_json())
        logger.debug(f"Broadcast {event.status} for order {event.order_id} to {receivers} subscribers")


class NullBroadcaster:
    def publish(self, event: BroadcastEvent) -> None:
        logger.debug(f"Broadcast disabled, dropping event for order {event.order_id}")


class LoggingDiscrepancyNotifier:
    """Placeholder delivery channel: discrepancies are only logged."""

    def notify(self, notice: DiscrepancyNotice) -> None:
        logger.warning(
            f"Discrepancy detected on order {notice.order_number} ({notice.order_id}) "
            f"for user {notice.user_id}: {notice.discrepancies}"
        )


class Outbox:
    def __init__(self, broadcaster=None, notifier=None):
        self.broadcaster = broadcaster or NullBroadcaster()
        self.notifier = notifier or LoggingDiscrepancyNotifier()

    def _dispatch(self, label: str, fn: Callable, *args) -> bool:
        try:
            fn(*args)
            return True
        except Exception as e:
            logger.error(f"Best-effort {label} failed: {e}", exc_info=True)
            return False

    def broadcast(self, event: BroadcastEvent) -> bool:
        return self._dispatch("broadcast", self.broadcaster.publish, event)

    def notify_discrepancy(self, notice: DiscrepancyNotice) -> bool:
        return self._dispatch("discrepancy notification", self.notifier.notify, notice)

    def record_link(self, db: Session, document_id, order_id, link_type: str, user_id) -> bool:
        """Append to ``document_links``. Runs after the owning transaction committed."""
        def write():
            try:
                db.add(DocumentLink(
                    document_id=document_id,
                    order_id=order_id,
                    link_type=link_type,
                    user_id=user_id,
                ))
                db.commit()
            except Exception:
                db.rollback()
                raise

        return self._dispatch("link history", write)


def build_outbox(redis_client=None, channel: Optional[str] = None) -> Outbox:
    if redis_client is None:
        return Outbox()
    return Outbox(broadcaster=RedisBroadcaster(redis_client, channel or "orders-updates"))
