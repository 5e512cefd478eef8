"""Live chat sessions: one user viewing one story room.

A session loads the room history, follows message inserts and presence on
the realtime hub, sends messages with an optimistic draft, and asks the
narrator to continue the story, either on demand or automatically.
"""
import asyncio
import contextlib
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from . import auth, config, dice, directory, gateway, realtime, store
from .gateway import GatewayError

logger = logging.getLogger("uvicorn.error")

NARRATOR_NAME = "Narrator"
UNKNOWN_PLAYER = "Unknown player"
EMPTY_ROOM_WARNING = "Start the story before calling the narrator!"
NARRATOR_BUSY_WARNING = "The narrator is already thinking."

narrator_locks: Dict[str, asyncio.Lock] = {}

Listener = Callable[[str, Dict[str, Any]], Awaitable[None]]


class ChatState(str, Enum):
    LOADING = "loading"
    READY = "ready"
    SENDING = "sending"
    INVOKING = "invoking"
    CLOSED = "closed"


class ChatError(Exception):
    message = "Chat request failed."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        if message:
            self.message = message


class InvalidMessage(ChatError):
    message = "Invalid message."


class SendFailed(ChatError):
    message = "Your message could not be sent."


class NarrationFailed(ChatError):
    message = "The narrator is not answering."


class SessionClosed(ChatError):
    message = "This chat session is closed."


@dataclass
class ChatMessage:
    id: str
    story_id: str
    content: str
    is_ai_narrator: bool
    user_id: Optional[str]
    created_at: str
    username: str

    @classmethod
    def from_row(cls, row: Dict[str, Any], username: str) -> "ChatMessage":
        return cls(
            id=row["id"],
            story_id=row["story_id"],
            content=row["content"],
            is_ai_narrator=bool(row.get("is_ai_narrator")),
            user_id=row.get("user_id"),
            created_at=row["created_at"],
            username=username,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "story_id": self.story_id,
            "content": self.content,
            "is_ai_narrator": self.is_ai_narrator,
            "user_id": self.user_id,
            "created_at": self.created_at,
            "username": self.username,
        }


@dataclass
class NarratorResult:
    message: Optional[ChatMessage] = None
    warning: Optional[str] = None


def narrator_lock(story_id: str) -> asyncio.Lock:
    return narrator_locks.setdefault(story_id, asyncio.Lock())


def discard_narrator_lock(story_id: str) -> None:
    lock = narrator_locks.get(story_id)
    if lock is not None and not lock.locked():
        del narrator_locks[story_id]


def list_messages(story_id: str) -> List[Dict[str, Any]]:
    rows = store.select("messages", story_id=story_id)
    return sorted(rows, key=lambda row: row["created_at"])


async def record_message(
    story_id: str,
    content: str,
    user_id: Optional[str],
    is_ai_narrator: bool = False,
    hub: Optional[realtime.Hub] = None,
) -> Dict[str, Any]:
    row = store.insert(
        "messages",
        {
            "story_id": story_id,
            "content": content,
            "is_ai_narrator": is_ai_narrator,
            # Narrator messages never carry a human author.
            "user_id": None if is_ai_narrator else user_id,
        },
    )
    await (hub or realtime.hub).publish_insert(story_id, row)
    return row


def message_view(row: Dict[str, Any]) -> Dict[str, Any]:
    if row.get("is_ai_narrator"):
        name = NARRATOR_NAME
    else:
        name = auth.display_name(row.get("user_id")) or UNKNOWN_PLAYER
    return ChatMessage.from_row(row, name).as_dict()


def narration_prompt(story_id: str) -> Optional[str]:
    story = store.get("stories", story_id)
    story_config = directory.get_config(story.get("config_id")) if story else None
    if story_config and story_config.get("system_prompt"):
        return story_config["system_prompt"]
    return None


class ChatBackend:
    async def fetch_messages(self, story_id: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def insert_message(
        self, story_id: str, content: str, user_id: Optional[str], is_ai_narrator: bool
    ) -> Dict[str, Any]:
        raise NotImplementedError

    async def resolve_username(self, user_id: str) -> Optional[str]:
        raise NotImplementedError

    async def narrate(self, messages: List[Dict[str, str]], story_id: str) -> str:
        raise NotImplementedError


class LocalChatBackend(ChatBackend):
    """Backend over the service's own stores, hub and LLM gateway."""

    def __init__(self, hub: Optional[realtime.Hub] = None):
        self.hub = hub or realtime.hub

    async def fetch_messages(self, story_id: str) -> List[Dict[str, Any]]:
        return list_messages(story_id)

    async def insert_message(
        self, story_id: str, content: str, user_id: Optional[str], is_ai_narrator: bool
    ) -> Dict[str, Any]:
        return await record_message(story_id, content, user_id, is_ai_narrator, hub=self.hub)

    async def resolve_username(self, user_id: str) -> Optional[str]:
        return auth.display_name(user_id)

    async def narrate(self, messages: List[Dict[str, str]], story_id: str) -> str:
        return await gateway.narrate(messages, narration_prompt(story_id))


class ChatSession:
    def __init__(
        self,
        story_id: str,
        user: Dict[str, Any],
        backend: ChatBackend,
        hub: Optional[realtime.Hub] = None,
        auto_narrator: bool = False,
        auto_narrator_delay: Optional[float] = None,
        window: Optional[int] = None,
    ):
        self.story_id = story_id
        self.user = user
        self.backend = backend
        self.hub = hub or getattr(backend, "hub", None) or realtime.hub
        self.auto_narrator = auto_narrator
        self.auto_narrator_delay = (
            config.AUTO_NARRATOR_DELAY_SECONDS if auto_narrator_delay is None else auto_narrator_delay
        )
        self.window = window or config.NARRATION_WINDOW
        self.state = ChatState.LOADING
        self.messages: List[ChatMessage] = []
        self.present_users: Dict[str, Dict[str, Any]] = {}
        self.draft = ""
        self._message_ids = set()
        self._listeners: List[Listener] = []
        self._subscriptions: List[realtime.Subscription] = []
        self._presence_meta: Optional[Dict[str, Any]] = None
        self._auto_task: Optional[asyncio.Task] = None

    # --- lifecycle ---
    async def open(self) -> List[ChatMessage]:
        for row in await self.backend.fetch_messages(self.story_id):
            self._merge(ChatMessage.from_row(row, await self._author_name(row)))
        self._subscriptions = [
            self.hub.subscribe(self.story_id, realtime.INSERT, self._on_insert),
            self.hub.subscribe(self.story_id, realtime.PRESENCE, self._on_presence),
        ]
        self.state = ChatState.READY
        self._presence_meta = {
            "user_id": self.user["id"],
            "username": self.user.get("username"),
            "online_at": store.stamp_now(),
        }
        await self.hub.track(self.story_id, self.user["id"], self._presence_meta)
        return self.messages

    async def close(self) -> None:
        if self.state is ChatState.CLOSED:
            return
        self.state = ChatState.CLOSED
        # Both feeds go away together.
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        task = self._auto_task
        self._auto_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._presence_meta is not None:
            await self.hub.untrack(self.story_id, self.user["id"], self._presence_meta)
            self._presence_meta = None
        if self.hub.subscriber_count(self.story_id, realtime.INSERT) == 0:
            discard_narrator_lock(self.story_id)
        self._listeners = []

    def set_auto_narrator(self, enabled: bool) -> None:
        self.auto_narrator = enabled
        if not enabled and self.auto_narrator_pending:
            self._auto_task.cancel()
            self._auto_task = None

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    @property
    def auto_narrator_pending(self) -> bool:
        return self._auto_task is not None and not self._auto_task.done()

    def present_list(self) -> List[Dict[str, Any]]:
        return list(self.present_users.values())

    # --- realtime feeds ---
    async def _emit(self, kind: str, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            await listener(kind, payload)

    async def _author_name(self, row: Dict[str, Any]) -> str:
        if row.get("is_ai_narrator"):
            return NARRATOR_NAME
        if not row.get("user_id"):
            return UNKNOWN_PLAYER
        return await self.backend.resolve_username(row["user_id"]) or UNKNOWN_PLAYER

    def _merge(self, message: ChatMessage) -> bool:
        if message.id in self._message_ids:
            return False
        self._message_ids.add(message.id)
        self.messages.append(message)
        return True

    async def _on_insert(self, row: Dict[str, Any]) -> None:
        message = ChatMessage.from_row(row, await self._author_name(row))
        if not self._merge(message):
            return
        await self._emit("message", message.as_dict())
        if self.auto_narrator and not message.is_ai_narrator:
            self._schedule_narrator()

    async def _on_presence(self, state: Dict[str, List[Dict[str, Any]]]) -> None:
        present = {}
        for key, metas in state.items():
            if not metas:
                continue
            present[key] = {"user_id": key, "username": metas[-1].get("username")}
        self.present_users = present
        await self._emit("presence", {"users": self.present_list()})

    # --- actions ---
    def _ensure_open(self) -> None:
        if self.state in (ChatState.LOADING, ChatState.CLOSED):
            raise SessionClosed()

    async def send_message(self, text: Optional[str] = None) -> ChatMessage:
        self._ensure_open()
        content = self.draft if text is None else text
        if not content or not content.strip():
            raise InvalidMessage("Message cannot be empty.")
        if len(content) > config.MAX_MESSAGE_LENGTH:
            raise InvalidMessage(
                f"Message must be at most {config.MAX_MESSAGE_LENGTH} characters."
            )
        self.draft = ""
        self.state = ChatState.SENDING
        try:
            row = await self.backend.insert_message(
                self.story_id, content, self.user["id"], False
            )
        except Exception as exc:
            self.draft = content
            logger.warning("Message send failed in story %s: %s", self.story_id, exc)
            raise SendFailed() from exc
        finally:
            if self.state is ChatState.SENDING:
                self.state = ChatState.READY
        message = ChatMessage.from_row(row, self.user.get("username") or UNKNOWN_PLAYER)
        if self._merge(message):
            await self._emit("message", message.as_dict())
        return self._find(message.id)

    def _find(self, message_id: str) -> ChatMessage:
        for message in self.messages:
            if message.id == message_id:
                return message
        raise KeyError(message_id)

    def narration_window(self) -> List[Dict[str, str]]:
        return [
            {"role": "assistant" if message.is_ai_narrator else "user", "content": message.content}
            for message in self.messages[-self.window:]
        ]

    async def invoke_narrator(self) -> NarratorResult:
        self._ensure_open()
        if not self.messages:
            return NarratorResult(warning=EMPTY_ROOM_WARNING)
        lock = narrator_lock(self.story_id)
        if lock.locked():
            return NarratorResult(warning=NARRATOR_BUSY_WARNING)
        async with lock:
            self.state = ChatState.INVOKING
            try:
                content = await self.backend.narrate(self.narration_window(), self.story_id)
                row = await self.backend.insert_message(self.story_id, content, None, True)
            except GatewayError as exc:
                raise NarrationFailed(exc.message) from exc
            except Exception as exc:
                logger.warning("Narration failed in story %s: %s", self.story_id, exc)
                raise NarrationFailed() from exc
            finally:
                if self.state is ChatState.INVOKING:
                    self.state = ChatState.READY
        message = ChatMessage.from_row(row, NARRATOR_NAME)
        if self._merge(message):
            await self._emit("message", message.as_dict())
        return NarratorResult(message=self._find(message.id))

    def _schedule_narrator(self) -> None:
        # A pending timer already covers newer messages; it reads them when it fires.
        if self.auto_narrator_pending:
            return
        self._auto_task = asyncio.create_task(self._auto_narrate())

    async def _auto_narrate(self) -> None:
        await asyncio.sleep(self.auto_narrator_delay)
        if self.state is ChatState.CLOSED:
            return
        if self.messages and self.messages[-1].is_ai_narrator:
            return
        try:
            result = await self.invoke_narrator()
        except ChatError as exc:
            logger.warning("Auto-narrator failed in story %s: %s", self.story_id, exc.message)
            await self._emit("error", {"message": exc.message})
            return
        if result.warning and result.warning != NARRATOR_BUSY_WARNING:
            await self._emit("warning", {"message": result.warning})

    async def roll_dice(
        self,
        count: int,
        sides: int,
        modifier: int = 0,
        on_frame: Optional[Callable[[List[int]], Awaitable[None]]] = None,
        reveal_delay: Optional[float] = None,
        rng: Optional[random.Random] = None,
    ) -> Tuple[dice.DiceRoll, ChatMessage]:
        self._ensure_open()
        # The roll is settled before any animation runs.
        result = dice.roll(count, sides, modifier, rng=rng)
        delay = config.DICE_REVEAL_DELAY_SECONDS if reveal_delay is None else reveal_delay
        if on_frame is not None:
            async for faces in dice.animate_roll(result, config.DICE_ANIMATION_FRAMES, delay):
                await on_frame(faces)
        elif delay:
            await asyncio.sleep(delay)
        message = await self.send_message(dice.format_roll(result))
        return result, message
