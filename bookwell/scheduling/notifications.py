from collections.abc import Callable
from types import TracebackType

from loguru import logger

from bookwell.domain.exceptions import StoreUnavailableError
from bookwell.domain.models import Notification
from bookwell.scheduling.feed import ChangeEvent, ChangeHandler, ChangeTopic, Subscription
from bookwell.scheduling.ports import SchedulingStoreProtocol


class NotificationCounterService:
    """Derived unread-notification counts.

    Counts are always recomputed from the store, never adjusted by deltas,
    so a missed or reordered change event cannot make them drift.  When a
    recount fails, the last known value for the user is served instead.
    Only the newest read for a user becomes its last known value, and the
    value is forgotten once the user's last live counter closes.
    """

    def __init__(self, store: SchedulingStoreProtocol) -> None:
        self._store = store
        self._last_known: dict[str, int] = {}
        # Tickets are global so a read started before forget() never records
        self._ticket = 0
        self._tracked_since: dict[str, int] = {}
        self._recorded: dict[str, int] = {}
        self._watchers: dict[str, int] = {}

    async def unread_count(self, user_id: str) -> int:
        self._ticket += 1
        ticket = self._ticket
        self._tracked_since.setdefault(user_id, ticket)
        try:
            count = await self._store.count_unread(user_id)
        except Exception as exc:
            if user_id in self._last_known:
                logger.warning("Unread recount failed, keeping last known value: {}", exc)
                return self._last_known[user_id]
            if isinstance(exc, StoreUnavailableError):
                raise
            raise StoreUnavailableError(f"Unread count failed: {exc}") from exc

        since = self._tracked_since.get(user_id)
        if since is not None and since <= ticket and ticket > self._recorded.get(user_id, 0):
            self._recorded[user_id] = ticket
            self._last_known[user_id] = count
        return count

    def forget(self, user_id: str) -> None:
        """Drop the cached count for ``user_id``."""
        self._last_known.pop(user_id, None)
        self._tracked_since.pop(user_id, None)
        self._recorded.pop(user_id, None)

    async def subscribe(
        self, user_id: str, on_change: Callable[[int], None] | None = None
    ) -> "UnreadCounter":
        counter = UnreadCounter(self, user_id, on_change)
        await counter.start()
        return counter

    def unsubscribe(self, counter: "UnreadCounter") -> None:
        counter.close()

    async def list_notifications(self, user_id: str) -> list[Notification]:
        try:
            return await self._store.list_notifications(user_id)
        except StoreUnavailableError:
            raise
        except Exception as exc:
            raise StoreUnavailableError(f"Notification listing failed: {exc}") from exc

    def watch(self, user_id: str, handler: ChangeHandler) -> Subscription:
        subscription = self._store.subscribe(ChangeTopic.NOTIFICATIONS, handler, user_id=user_id)
        self._watchers[user_id] = self._watchers.get(user_id, 0) + 1
        return subscription

    def release(self, user_id: str) -> None:
        """Undo one :meth:`watch`; the last release forgets the user's count."""
        remaining = self._watchers.get(user_id, 0) - 1
        if remaining > 0:
            self._watchers[user_id] = remaining
            return
        self._watchers.pop(user_id, None)
        self.forget(user_id)


class UnreadCounter:
    """A live unread count for one user, refreshed on every notification change.

    Use as an async context manager, or call :meth:`start` and :meth:`close`
    explicitly.  Once closed it ignores further events.
    """

    def __init__(
        self,
        service: NotificationCounterService,
        user_id: str,
        on_change: Callable[[int], None] | None = None,
    ) -> None:
        self._service = service
        self.user_id = user_id
        self._on_change = on_change
        self._value = 0
        self._subscription: Subscription | None = None
        self._closed = False
        # Refreshes run concurrently; only the newest started one may land
        self._started = 0
        self._applied = 0

    @property
    def value(self) -> int:
        return self._value

    @property
    def active(self) -> bool:
        return self._subscription is not None and self._subscription.active

    async def start(self) -> int:
        self._closed = False
        if self._subscription is None:
            self._subscription = self._service.watch(self.user_id, self._on_event)
        return await self.refresh()

    async def refresh(self) -> int:
        self._started += 1
        ticket = self._started
        try:
            count = await self._service.unread_count(self.user_id)
        except StoreUnavailableError as exc:
            logger.warning("Unread count unavailable, keeping {}: {}", self._value, exc)
            return self._value

        if self._closed or ticket < self._applied:
            return self._value
        self._applied = ticket
        if count != self._value:
            self._value = count
            if self._on_change is not None:
                self._on_change(count)
        return self._value

    def close(self) -> None:
        self._closed = True
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
            self._service.release(self.user_id)

    async def _on_event(self, event: ChangeEvent) -> None:
        if self.active:
            await self.refresh()

    async def __aenter__(self) -> "UnreadCounter":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
