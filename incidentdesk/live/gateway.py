"""Live Query Gateway — standing queries that push fresh result sets.

Writers call ``publish(collection)`` after a commit. Every subscription on
that collection re-runs its fetch coroutine and delivers the new result
when it differs from the last one delivered. Each subscription owns a
queue and a worker task, so one stream sees results in commit order.
"""

import asyncio
import inspect
from collections import defaultdict
from typing import Any, Awaitable, Callable, Optional

from ..errors import IncidentDeskError, OperationTimeoutError
from ..utils.logging import get_logger

logger = get_logger("live.gateway")

FetchFn = Callable[[], Awaitable[Any]]
UpdateFn = Callable[[Any], Any]
ErrorFn = Callable[[IncidentDeskError], Any]


class SubscriptionError(IncidentDeskError):
    """A live query fetch failed for a reason other than a known domain error."""

    status_code = 503
    retryable = True


class Subscription:
    """One standing query bound to a callback pair."""

    _REFRESH = object()

    def __init__(
        self,
        gateway: "LiveQueryGateway",
        collection: str,
        fetch: FetchFn,
        on_update: UpdateFn,
        on_error: Optional[ErrorFn],
        queue_size: int,
        fetch_timeout: float,
    ) -> None:
        self.collection = collection
        self._gateway = gateway
        self._fetch = fetch
        self._on_update = on_update
        self._on_error = on_error
        self._fetch_timeout = fetch_timeout
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._task: asyncio.Task | None = None
        self._last: Any = None
        self._delivered = 0
        self.cancelled = False

    def start(self) -> None:
        self._queue.put_nowait(self._REFRESH)
        self._task = asyncio.create_task(self._worker())

    def refresh(self) -> None:
        """Request a re-fetch. A full queue already holds a pending refresh."""
        if self.cancelled:
            return
        try:
            self._queue.put_nowait(self._REFRESH)
        except asyncio.QueueFull:
            pass

    def cancel(self) -> None:
        """Release the subscription. Safe to call any number of times."""
        if self.cancelled:
            return
        self.cancelled = True
        self._gateway._remove(self)
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _worker(self) -> None:
        try:
            while not self.cancelled:
                await self._queue.get()
                # Coalesce refreshes that piled up while the last fetch ran
                while not self._queue.empty():
                    self._queue.get_nowait()

                try:
                    result = await asyncio.wait_for(self._fetch(), timeout=self._fetch_timeout)
                except asyncio.CancelledError:
                    raise
                except asyncio.TimeoutError:
                    await self._fail(OperationTimeoutError(
                        f"live query on {self.collection} timed out after {self._fetch_timeout}s",
                        collection=self.collection,
                    ))
                    return
                except IncidentDeskError as exc:
                    await self._fail(exc)
                    return
                except Exception as exc:
                    logger.error("live_query_fetch_error", collection=self.collection, error=str(exc))
                    await self._fail(SubscriptionError(
                        f"live query on {self.collection} failed: {exc}",
                        collection=self.collection,
                    ))
                    return

                if self.cancelled:
                    return
                if self._delivered and result == self._last:
                    continue
                self._last = result
                self._delivered += 1
                await self._call(self._on_update, result)
        except asyncio.CancelledError:
            return

    async def _fail(self, error: IncidentDeskError) -> None:
        logger.warning(
            "live_query_failed",
            collection=self.collection,
            error=error.message,
            retryable=error.retryable,
        )
        self.cancel()
        if self._on_error is not None:
            await self._call(self._on_error, error)

    async def _call(self, fn: Callable, arg: Any) -> None:
        try:
            ret = fn(arg)
            if inspect.isawaitable(ret):
                await ret
        except Exception as exc:
            logger.error("live_query_callback_error", collection=self.collection, error=str(exc))


class LiveQueryGateway:
    """Registry of standing queries keyed by collection name.

    Collections: incidents, users, notifications, messages, categories.
    """

    def __init__(self, queue_size: int = 100, fetch_timeout: float = 10.0) -> None:
        self._subscriptions: dict[str, list[Subscription]] = defaultdict(list)
        self._queue_size = queue_size
        self._fetch_timeout = fetch_timeout
        self._total_published = 0
        self._total_subscribed = 0

    def subscribe(
        self,
        collection: str,
        fetch: FetchFn,
        on_update: UpdateFn,
        on_error: Optional[ErrorFn] = None,
    ) -> Callable[[], None]:
        """Start a standing query and return its cancel handle.

        Must be called from a running event loop. The current result is
        delivered right away; later results follow every publish on
        ``collection`` whose result differs from the previous delivery.
        """
        subscription = Subscription(
            self,
            collection,
            fetch,
            on_update,
            on_error,
            queue_size=self._queue_size,
            fetch_timeout=self._fetch_timeout,
        )
        self._subscriptions[collection].append(subscription)
        self._total_subscribed += 1
        subscription.start()
        logger.debug("live_query_subscribed", collection=collection)
        return subscription.cancel

    def publish(self, collection: str, document_id: str | None = None) -> None:
        """Signal a committed write to ``collection`` (non-blocking)."""
        self._total_published += 1
        subscribers = list(self._subscriptions.get(collection, []))
        for subscription in subscribers:
            subscription.refresh()
        if subscribers:
            logger.debug(
                "live_query_published",
                collection=collection,
                document_id=document_id,
                subscribers=len(subscribers),
            )

    def _remove(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.collection, [])
        if subscription in subs:
            subs.remove(subscription)

    async def close(self) -> None:
        """Cancel every open subscription."""
        for subs in list(self._subscriptions.values()):
            for subscription in list(subs):
                subscription.cancel()
        self._subscriptions.clear()

    def subscriber_count(self, collection: str | None = None) -> int:
        if collection is not None:
            return len(self._subscriptions.get(collection, []))
        return sum(len(v) for v in self._subscriptions.values())

    def get_stats(self) -> dict:
        return {
            "total_published": self._total_published,
            "total_subscribed": self._total_subscribed,
            "active_subscriptions": self.subscriber_count(),
            "collections": [c for c, subs in self._subscriptions.items() if subs],
        }
