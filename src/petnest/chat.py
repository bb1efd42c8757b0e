"""
Conversation view: per-conversation chat state machine.

States: LOADING → READY | LOAD_ERROR, and CLOSED after teardown.

- History order is arrival order. The server echoes our own messages back
  through the channel, so `send()` never appends locally and every
  participant sees the same sequence.
- Outbound typing is debounced: one "started" per burst of input, one
  "stopped" on idle timeout, send or blur.
- Inbound typing expires locally, in case the peer's "stopped" is lost.
- Read markers only ever move forward, in both directions.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import ValidationError

from petnest.conversations import ConversationsAPI
from petnest.errors import HistoryLoadFailed, InvalidConversation, MetadataUnavailable
from petnest.models.conversation import Conversation, Message, Participant, ReadMarker, TypingSignal
from petnest.models.events import (
    C2SEvent,
    ConnectionEvent,
    S2CEvent,
    conversation_of,
    message_payload,
    read_payload,
    typing_payload,
)
from petnest.transport.socketio import RealtimeClient

logger = logging.getLogger(__name__)

DEFAULT_TYPING_IDLE_S = 1.0
DEFAULT_TYPING_EXPIRY_S = 1.5

ChangeHandler = Callable[[str, Any], None]


class ViewState(str, Enum):
    LOADING = "loading"
    READY = "ready"
    LOAD_ERROR = "load_error"
    CLOSED = "closed"


def validate_conversation_id(conversation_id: Any) -> str:
    if not isinstance(conversation_id, str) or not conversation_id.strip() or "/" in conversation_id:
        raise InvalidConversation(conversation_id)
    return conversation_id.strip()


class ConversationView:
    def __init__(
        self,
        conversation_id: str,
        api: ConversationsAPI,
        realtime: RealtimeClient,
        user_id: Optional[str],
        typing_idle_s: float = DEFAULT_TYPING_IDLE_S,
        typing_expiry_s: float = DEFAULT_TYPING_EXPIRY_S,
    ):
        self.conversation_id = validate_conversation_id(conversation_id)
        self._api = api
        self._realtime = realtime
        self._user_id = user_id
        self._typing_idle_s = typing_idle_s
        self._typing_expiry_s = typing_expiry_s

        self.state = ViewState.LOADING
        self.messages: list[Message] = []
        self.conversation: Optional[Conversation] = None
        self.error: Optional[HistoryLoadFailed] = None
        self.metadata_error: Optional[MetadataUnavailable] = None
        self.typing = False
        self.peer_typing = False
        self.seen_at: Optional[datetime] = None

        self._ids: set[str] = set()
        self._pending: list[Message] = []
        self._read_at: Optional[datetime] = None
        self._typing_timer: Optional[asyncio.TimerHandle] = None
        self._peer_typing_timer: Optional[asyncio.TimerHandle] = None
        self._loading: Optional["asyncio.Future[list[Any]]"] = None
        self._remove_handler: Optional[Callable[[], None]] = None
        self._change_handlers: list[ChangeHandler] = []
        self._tasks: set["asyncio.Task[Any]"] = set()

    def __repr__(self) -> str:
        return f"ConversationView(conversation_id={self.conversation_id!r}, state={self.state.value!r})"

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def connected(self) -> bool:
        return self._realtime.connected

    # -- lifecycle ---------------------------------------------------------

    async def open(self) -> "ConversationView":
        """Subscribe, join the channel and load history + metadata concurrently."""
        if self._remove_handler is not None or self.state is not ViewState.LOADING:
            return self
        self._remove_handler = self._realtime.add_event_handler(self._handle_event)
        self._realtime.join(self.conversation_id)

        self._loading = asyncio.gather(
            self._api.messages(self.conversation_id),
            self._api.get(self.conversation_id),
            return_exceptions=True,
        )
        try:
            history, metadata = await self._loading
        except asyncio.CancelledError:
            if self.state is ViewState.CLOSED:
                return self
            raise
        finally:
            self._loading = None
        if self.state is ViewState.CLOSED:
            return self

        if isinstance(metadata, BaseException):
            logger.debug("Metadata for %s unavailable: %s", self.conversation_id, metadata)
            self.metadata_error = MetadataUnavailable(str(metadata) or type(metadata).__name__)
        else:
            self.conversation = metadata

        if isinstance(history, BaseException):
            status = getattr(history, "status_code", None)
            message = "Conversation not found" if status == 404 else "Failed to load chat"
            logger.error("History load for %s failed: %s", self.conversation_id, history)
            self.error = HistoryLoadFailed(message, status_code=status)
            self._pending.clear()
            self._detach()
            self._set_state(ViewState.LOAD_ERROR)
            raise self.error from history

        for message in list(history) + self._pending:
            self._append(message)
        self._pending.clear()
        self._set_state(ViewState.READY)
        self._maybe_mark_read()
        return self

    def close(self) -> None:
        """Tear down: no listener, channel membership or timer outlives the view."""
        if self.state is ViewState.CLOSED:
            return
        if self.typing:
            self._end_typing()
        self._cancel_timer("_typing_timer")
        self._cancel_timer("_peer_typing_timer")
        self._detach()
        self._set_state(ViewState.CLOSED)
        if self._loading is not None:
            self._loading.cancel()
        self._change_handlers.clear()

    def _detach(self) -> None:
        if self._remove_handler is not None:
            self._remove_handler()
            self._remove_handler = None
            self._realtime.leave(self.conversation_id)

    # -- derived state -----------------------------------------------------

    @property
    def is_self_conversation(self) -> bool:
        me = self._user_id
        if not me:
            return False
        if self.conversation is not None and self.conversation.participant_ids:
            return self.conversation.participant_ids == {me}
        if self.messages:
            ids = {m.sender_id for m in self.messages if m.sender_id}
            ids |= {m.recipient_id for m in self.messages if m.recipient_id}
            return ids == {me}
        return False

    @property
    def can_send(self) -> bool:
        return self.state is ViewState.READY and not self.is_self_conversation and self._realtime.connected

    def other_participant(self) -> Optional[Participant]:
        me = self._user_id
        if not me:
            return None
        if self.conversation is not None:
            for p in self.conversation.participants:
                if p.id != me:
                    return p
        if self.messages:
            last = self.messages[-1]
            if last.sender_id and last.sender_id != me:
                return last.sender or Participant(id=last.sender_id)
            if last.recipient_id and last.recipient_id != me:
                return last.recipient or Participant(id=last.recipient_id)
        return None

    def last_own_message(self) -> Optional[Message]:
        if not self._user_id:
            return None
        for m in reversed(self.messages):
            if m.sender_id == self._user_id:
                return m
        return None

    @property
    def seen_message(self) -> Optional[Message]:
        """The message to render "Seen" under, if any."""
        own = self.last_own_message()
        if own is None or own.created_at is None or self.seen_at is None:
            return None
        return own if self.seen_at >= own.created_at else None

    def is_seen(self, message: Message) -> bool:
        return self.seen_message is message

    # -- change notifications ----------------------------------------------

    def add_change_handler(self, handler: ChangeHandler) -> Callable[[], None]:
        """Called with (kind, value) for state, message, typing, seen and connection changes."""
        self._change_handlers.append(handler)

        def remove() -> None:
            try:
                self._change_handlers.remove(handler)
            except ValueError:
                pass
        return remove

    def _changed(self, kind: str, value: Any) -> None:
        for handler in list(self._change_handlers):
            try:
                handler(kind, value)
            except Exception:
                logger.exception("Change handler failed for %s", kind)

    def _set_state(self, state: ViewState) -> None:
        self.state = state
        self._changed("state", state)

    # -- local actions -----------------------------------------------------

    def send(self, text: str) -> bool:
        """Emit a message. The local copy arrives back through the channel like everyone else's."""
        body = text.strip()
        if not body or not self.can_send:
            return False
        self._realtime.send(C2SEvent.MESSAGE, message_payload(self.conversation_id, body))
        self._end_typing()
        return True

    def input_changed(self) -> None:
        """Call on every local text-input change."""
        if self.state is not ViewState.READY or self.is_self_conversation or not self._realtime.connected:
            return
        if not self.typing:
            self.typing = True
            self._realtime.send(C2SEvent.TYPING, typing_payload(self.conversation_id, True))
        self._cancel_timer("_typing_timer")
        loop = asyncio.get_running_loop()
        self._typing_timer = loop.call_later(self._typing_idle_s, self._typing_idle)

    def blur(self) -> None:
        """Input lost focus."""
        self._end_typing()

    def _typing_idle(self) -> None:
        self._typing_timer = None
        self._end_typing()

    def _end_typing(self, emit: bool = True) -> None:
        self._cancel_timer("_typing_timer")
        if not self.typing:
            return
        self.typing = False
        if emit:
            self._realtime.send(C2SEvent.TYPING, typing_payload(self.conversation_id, False))

    def _cancel_timer(self, name: str) -> None:
        timer = getattr(self, name)
        if timer is not None:
            timer.cancel()
            setattr(self, name, None)

    # -- inbound -----------------------------------------------------------

    def _handle_event(self, event: str, data: dict[str, Any]) -> None:
        if self.state is ViewState.CLOSED:
            return
        if event == S2CEvent.MESSAGE:
            self._on_message(data)
        elif event == S2CEvent.TYPING:
            self._on_typing(data)
        elif event == S2CEvent.READ:
            self._on_read(data)
        elif event in (ConnectionEvent.CONNECT, ConnectionEvent.RECONNECT, ConnectionEvent.DISCONNECT):
            if event == ConnectionEvent.DISCONNECT:
                # Nothing can be emitted now; the peer's expiry timer hides our indicator.
                self._end_typing(emit=False)
            self._changed("connection", self._realtime.state)

    def _on_message(self, data: dict[str, Any]) -> None:
        if conversation_of(data) != self.conversation_id:
            return
        try:
            message = Message.model_validate(data)
        except ValidationError as e:
            logger.debug("Discarding malformed message: %s", e)
            return
        if self.state is ViewState.LOADING:
            self._pending.append(message)
            return
        if self.state is not ViewState.READY:
            return
        if self._append(message):
            self._changed("message", message)
            self._maybe_mark_read()

    def _append(self, message: Message) -> bool:
        # At-least-once delivery: a redelivered id is dropped.
        if message.id:
            if message.id in self._ids:
                return False
            self._ids.add(message.id)
        self.messages.append(message)
        return True

    def _on_typing(self, data: dict[str, Any]) -> None:
        try:
            signal = TypingSignal.model_validate(data)
        except ValidationError:
            return
        if signal.conversation_id != self.conversation_id:
            return
        if self._user_id and signal.user_id == self._user_id:
            return
        self._cancel_timer("_peer_typing_timer")
        if signal.is_typing:
            loop = asyncio.get_running_loop()
            self._peer_typing_timer = loop.call_later(self._typing_expiry_s, self._peer_typing_expired)
            if not self.peer_typing:
                self.peer_typing = True
                self._changed("typing", True)
        elif self.peer_typing:
            self.peer_typing = False
            self._changed("typing", False)

    def _peer_typing_expired(self) -> None:
        self._peer_typing_timer = None
        if self.peer_typing:
            self.peer_typing = False
            self._changed("typing", False)

    def _on_read(self, data: dict[str, Any]) -> None:
        try:
            marker = ReadMarker.model_validate(data)
        except ValidationError:
            return
        if marker.conversation_id != self.conversation_id or marker.at is None:
            return
        if self._user_id and marker.user_id == self._user_id:
            return
        if self.seen_at is None or marker.at > self.seen_at:
            self.seen_at = marker.at
            self._changed("seen", marker.at)

    # -- read receipts -----------------------------------------------------

    def _maybe_mark_read(self) -> None:
        if self.state is not ViewState.READY or not self.messages:
            return
        last = self.messages[-1]
        if self._user_id and last.sender_id == self._user_id:
            return
        at = last.created_at or datetime.now(timezone.utc)
        if self._read_at is not None and at <= self._read_at:
            return
        self._read_at = at
        self._track(self._persist_read(at))
        self._realtime.send(C2SEvent.READ, read_payload(self.conversation_id, at))

    async def _persist_read(self, at: datetime) -> None:
        try:
            await self._api.mark_read(self.conversation_id, at)
        except Exception as e:
            logger.debug("Ignoring read-marker persistence failure for %s: %s", self.conversation_id, e)

    def _track(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
