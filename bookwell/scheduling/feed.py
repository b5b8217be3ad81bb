import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from loguru import logger


class ChangeTopic(Enum):
    APPOINTMENTS = "appointments"
    WAITING_LIST = "waiting_list"
    NOTIFICATIONS = "notifications"


@dataclass(frozen=True)
class ChangeEvent:
    """A committed mutation. ``user_id=None`` means "anyone may be affected"."""

    topic: ChangeTopic
    user_id: str | None = None
    row_id: str | None = None


ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]


class Subscription:
    """A live registration on a :class:`ChangeFeed`. Close it when done."""

    def __init__(
        self,
        feed: "ChangeFeed",
        topic: ChangeTopic,
        handler: ChangeHandler,
        user_id: str | None = None,
    ) -> None:
        self._feed = feed
        self.topic = topic
        self.user_id = user_id
        self.handler = handler
        self.active = True

    def matches(self, event: ChangeEvent) -> bool:
        if not self.active or event.topic is not self.topic:
            return False
        return self.user_id is None or event.user_id is None or event.user_id == self.user_id

    def close(self) -> None:
        if self.active:
            self.active = False
            self._feed.remove(self)


class ChangeFeed:
    """In-process change notifications keyed by topic and user.

    Each matching subscription receives each event in its own task, so a
    slow or failing handler never holds up the writer that published it.
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        # Strong references so in-flight dispatches are not garbage collected
        self._tasks: set[asyncio.Task[None]] = set()

    def subscribe(
        self, topic: ChangeTopic, handler: ChangeHandler, *, user_id: str | None = None
    ) -> Subscription:
        subscription = Subscription(self, topic, handler, user_id)
        self._subscriptions.append(subscription)
        logger.debug("Subscribed to {} changes (user={})", topic.value, user_id)
        return subscription

    def remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
            logger.debug("Unsubscribed from {} changes", subscription.topic.value)

    def has_subscribers(self, topic: ChangeTopic) -> bool:
        return any(s.topic is topic for s in self._subscriptions)

    def publish(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.matches(event):
                continue
            task = asyncio.create_task(self._dispatch(subscription, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, subscription: Subscription, event: ChangeEvent) -> None:
        if not subscription.active:
            return
        try:
            await subscription.handler(event)
        except Exception:
            logger.exception("Change handler for {} failed", event.topic.value)

    async def drain(self) -> None:
        """Wait until every dispatched handler has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.close()
