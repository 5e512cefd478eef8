"""In-process publish/subscribe hub scoped by room id.

Two event kinds exist: ``insert`` carries a freshly inserted message row and
``presence`` carries the room's whole presence state (``key -> [meta, ...]``)
every time someone is tracked or untracked.
"""
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Tuple

logger = logging.getLogger("uvicorn.error")

INSERT = "insert"
PRESENCE = "presence"

Callback = Callable[[Any], Awaitable[None]]


class Subscription:
    def __init__(self, hub: "Hub", room: str, event: str, callback: Callback):
        self.hub = hub
        self.room = room
        self.event = event
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.hub._remove(self)
            self.active = False


class Hub:
    def __init__(self) -> None:
        self._subscribers: Dict[Tuple[str, str], List[Subscription]] = defaultdict(list)
        self._presence: Dict[str, Dict[str, List[Dict[str, Any]]]] = {}

    def subscribe(self, room: str, event: str, callback: Callback) -> Subscription:
        if event not in (INSERT, PRESENCE):
            raise ValueError(f"Unknown event: {event}")
        subscription = Subscription(self, room, event, callback)
        self._subscribers[(room, event)].append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        key = (subscription.room, subscription.event)
        subscribers = self._subscribers.get(key, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            self._subscribers.pop(key, None)

    def subscriber_count(self, room: str, event: str) -> int:
        return len(self._subscribers.get((room, event), []))

    async def publish(self, room: str, event: str, payload: Any) -> None:
        for subscription in list(self._subscribers.get((room, event), [])):
            if not subscription.active:
                continue
            try:
                await subscription.callback(payload)
            except Exception:
                logger.exception("Realtime %s callback failed for room %s", event, room)

    async def publish_insert(self, room: str, row: Dict[str, Any]) -> None:
        await self.publish(room, INSERT, row)

    def presence_state(self, room: str) -> Dict[str, List[Dict[str, Any]]]:
        return {key: list(metas) for key, metas in self._presence.get(room, {}).items()}

    async def track(self, room: str, key: str, meta: Dict[str, Any]) -> None:
        self._presence.setdefault(room, {}).setdefault(key, []).append(meta)
        await self.publish(room, PRESENCE, self.presence_state(room))

    async def untrack(self, room: str, key: str, meta: Dict[str, Any]) -> None:
        room_state = self._presence.get(room, {})
        metas = [item for item in room_state.get(key, []) if item is not meta]
        if metas:
            room_state[key] = metas
        else:
            room_state.pop(key, None)
        if not room_state:
            self._presence.pop(room, None)
        await self.publish(room, PRESENCE, self.presence_state(room))


hub = Hub()
