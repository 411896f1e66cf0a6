"""
In-process change feed

Synchronous pub/sub keyed by collection name. The document store publishes
every committed write here; the ingestion watcher subscribes to the upstream
collections it cares about.

Fun fact: This is the "observer" pattern wearing a work badge. In production
the same interface can front a real-time database listener or a message
queue without changing any ledger code!
"""

from collections import defaultdict
from typing import Callable

from campus_ledger.kernel.logging import get_logger
from campus_ledger.kernel.notifications import ChangeNotification

logger = get_logger(__name__)

ChangeHandler = Callable[[ChangeNotification], object]


class InProcessChangeFeed:
    """
    Simple synchronous change feed

    Handlers are called in registration order on the publishing thread.
    A failing handler is logged and does not stop delivery to the others:
    the document is already committed, and every consumer is expected to
    record its own failures.
    """

    def __init__(self) -> None:
        self._handlers: defaultdict[str, list[ChangeHandler]] = defaultdict(list)
        logger.debug("InProcessChangeFeed initialized")

    def subscribe(self, collection: str, handler: ChangeHandler) -> None:
        """
        Register a handler for changes in a collection

        Args:
            collection: Collection name (e.g., "procurement-requests")
            handler: Callable receiving each ChangeNotification
        """
        self._handlers[collection].append(handler)
        logger.debug(
            "Change handler registered",
            collection=collection,
            total_handlers=len(self._handlers[collection]),
        )

    def publish(self, notification: ChangeNotification) -> None:
        """Deliver one notification to every subscriber of its collection"""
        handlers = self._handlers.get(notification.collection, [])
        if not handlers:
            return

        for handler in handlers:
            try:
                handler(notification)
            except Exception as e:
                logger.error(
                    "Change handler failed",
                    collection=notification.collection,
                    document_id=notification.document_id,
                    notification_id=notification.notification_id,
                    error=str(e),
                    exc_info=True,
                )

    def publish_all(self, notifications: list[ChangeNotification]) -> None:
        for notification in notifications:
            self.publish(notification)

    def subscribed_collections(self) -> list[str]:
        """Collections with at least one handler"""
        return [name for name, handlers in self._handlers.items() if handlers]

    def clear(self) -> None:
        """Remove all handlers (useful for testing)"""
        self._handlers.clear()
