"""Order notifications, dispatched without blocking the request that caused them."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Set

logger = logging.getLogger(__name__)


class NotificationDispatcher(ABC):
    """
    Delivers order notifications (email, chat, ...). Receives order
    snapshots as produced by ``Order.to_dict()``.
    """

    @abstractmethod
    async def order_created(self, order: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    async def order_status_changed(self, order: Dict[str, Any], previous_status: str) -> None:
        raise NotImplementedError


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Default dispatcher that only writes log lines."""

    async def order_created(self, order: Dict[str, Any]) -> None:
        logger.info(
            f"Order {order['id']} created for {order['customer_email']} "
            f"({order['charged_amount']} {order['currency']})"
        )

    async def order_status_changed(self, order: Dict[str, Any], previous_status: str) -> None:
        logger.info(
            f"Order {order['id']} status changed from {previous_status} to {order['status']}"
        )


class BackgroundNotifier:
    """
    Runs dispatcher calls as fire-and-forget tasks.

    Failures are logged and never reach the caller. Tasks are tracked so they
    are not garbage collected early and so shutdown can wait for them.
    """

    def __init__(self, dispatcher: Optional[NotificationDispatcher] = None):
        self.dispatcher = dispatcher or LoggingNotificationDispatcher()
        self._tasks: Set[asyncio.Task] = set()

    def _spawn(self, coro, description: str) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(f"Notification '{description}' failed: {exc!r}")

        task.add_done_callback(_done)

    def order_created(self, order: Dict[str, Any]) -> None:
        self._spawn(self.dispatcher.order_created(order), f"order_created {order['id']}")

    def order_status_changed(self, order: Dict[str, Any], previous_status: str) -> None:
        self._spawn(
            self.dispatcher.order_status_changed(order, previous_status),
            f"order_status_changed {order['id']}",
        )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait for every notification dispatched so far to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
