"""
Signaling relay and per-participant channels.

SignalingHub is the relay: rooms keyed by session token, each holding the
participants currently attached (in-process channels or WebSocket peers)
and a bounded backlog of every message sent in the room. The backlog is the
fallback store that late joiners replay.

SignalingChannel is one participant's view of a room: it stamps and sends
messages, and receives them through an inbox processed in order by a pump
task. Delivery upstream is at-least-once (live fan-out plus backlog replay),
so the channel drops ids it has already processed.
"""
import asyncio
import logging
from collections import defaultdict, deque
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Protocol, Set, Union

from livecast.core.config import configs
from livecast.schemas.signal_schema import SignalMessage

logger = logging.getLogger(__name__)

BROADCASTER = "broadcaster"
VIEWER = "viewer"

SignalHandler = Callable[[SignalMessage], Awaitable[None]]


class Participant(Protocol):
    participant_id: str

    async def deliver(self, message: SignalMessage) -> None:
        ...


class SignalingHub:

    def __init__(self, backlog_size: Optional[int] = None):
        self.backlog_size = backlog_size or configs.SIGNAL_BACKLOG_SIZE
        self._rooms: Dict[str, Dict[str, Participant]] = defaultdict(dict)
        self._backlogs: Dict[str, Deque[SignalMessage]] = {}

    # ── membership ───────────────────────────────────────────────────

    def attach(self, session_token: str, participant: Participant) -> None:
        room = self._rooms[session_token]
        if participant.participant_id in room and room[participant.participant_id] is not participant:
            logger.info(f"[signal:{session_token}] replacing participant {participant.participant_id}")
        room[participant.participant_id] = participant
        logger.info(f"[signal:{session_token}] attached {participant.participant_id} (total={len(room)})")

    def detach(self, session_token: str, participant_id: str) -> None:
        room = self._rooms.get(session_token)
        if not room:
            return
        room.pop(participant_id, None)
        logger.info(f"[signal:{session_token}] detached {participant_id} (total={len(room)})")
        if not room:
            del self._rooms[session_token]

    def participants(self, session_token: str) -> List[str]:
        return list(self._rooms.get(session_token, {}).keys())

    def has_room(self, session_token: str) -> bool:
        return session_token in self._rooms

    def close_room(self, session_token: str) -> None:
        """Forget a room and its backlog (the broadcast is over)."""
        self._rooms.pop(session_token, None)
        self._backlogs.pop(session_token, None)
        logger.info(f"[signal:{session_token}] room closed")

    # ── messages ─────────────────────────────────────────────────────

    def record(self, session_token: str, message: SignalMessage) -> None:
        backlog = self._backlogs.get(session_token)
        if backlog is None:
            backlog = deque(maxlen=self.backlog_size)
            self._backlogs[session_token] = backlog
        backlog.append(message)

    def backlog(self, session_token: str) -> List[SignalMessage]:
        return list(self._backlogs.get(session_token, ()))

    def backlog_for(self, session_token: str, participant_id: str) -> List[SignalMessage]:
        """The backlog as participant_id would have received it live: no own messages, none addressed elsewhere."""
        return [
            m for m in self.backlog(session_token)
            if m.sender != participant_id and (not m.target or m.target == participant_id)
        ]

    async def publish(self, session_token: str, message: SignalMessage) -> int:
        """
        Fan a message out to every other participant of the room, or only to
        `message.target` when set. Returns the number of deliveries.
        Raises LookupError when the room has no participants.
        """
        room = self._rooms.get(session_token)
        if not room:
            raise LookupError(f"No signaling room for {session_token}")

        if message.target:
            recipients = [room[message.target]] if message.target in room else []
        else:
            recipients = [p for pid, p in room.items() if pid != message.sender]

        delivered = 0
        for participant in recipients:
            try:
                await participant.deliver(message)
                delivered += 1
            except Exception as e:
                logger.warning(
                    f"[signal:{session_token}] delivery of {message.type} to "
                    f"{participant.participant_id} failed: {e}"
                )
        return delivered


class RecentIds:
    """Membership set that remembers only the newest `size` ids."""

    def __init__(self, size: int):
        self._order: Deque[str] = deque()
        self._ids: Set[str] = set()
        self.size = size

    def add(self, message_id: str) -> None:
        if message_id in self._ids:
            return
        self._order.append(message_id)
        self._ids.add(message_id)
        while len(self._order) > self.size:
            self._ids.discard(self._order.popleft())

    def __contains__(self, message_id) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)


class SignalingChannel:
    """One participant (broadcaster or viewer) attached to a signaling room."""

    def __init__(self, hub: SignalingHub, session_token: str, participant_id: str, role: str):
        if role not in (BROADCASTER, VIEWER):
            raise ValueError(f"Unknown signaling role: {role}")
        self.hub = hub
        self.session_token = session_token
        self.participant_id = participant_id
        self.role = role
        # outlives the backlog: every id a replay can return is still known
        self.processed_ids = RecentIds(2 * hub.backlog_size)
        self._handlers: Dict[str, SignalHandler] = {}
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._pump: Optional[asyncio.Task] = None
        self._closed = False

    def on(self, message_type: str, handler: SignalHandler) -> None:
        self._handlers[message_type] = handler

    async def open(self) -> None:
        self.hub.attach(self.session_token, self)
        if self._pump is None:
            self._pump = asyncio.create_task(self._run(), name=f"signal-{self.participant_id}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.hub.detach(self.session_token, self.participant_id)
        if self._pump is not None:
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
            self._pump = None

    async def send(self, message: Union[SignalMessage, dict]) -> SignalMessage:
        """
        Stamp (id, timestamp) and publish a message. A copy always lands in
        the room backlog, even when the live fan-out fails; there is no retry.
        """
        if isinstance(message, dict):
            message = SignalMessage.model_validate(
                {"from": self.role, "sender": self.participant_id, **message}
            )
        message = message.stamped()
        # own messages never come back to us
        self.processed_ids.add(message.id)
        try:
            await self.hub.publish(self.session_token, message)
            logger.debug(f"[{self.participant_id}] sent {message.type} from={message.from_}")
        except Exception as e:
            logger.warning(f"[{self.participant_id}] signaling transport failed for {message.type}: {e}")
        finally:
            self.hub.record(self.session_token, message)
        return message

    async def deliver(self, message: SignalMessage) -> None:
        if self._closed:
            return
        await self._inbox.put(message)

    async def replay(self) -> int:
        """Process the room backlog (late join). Returns how many were handled."""
        handled = 0
        for message in self.hub.backlog(self.session_token):
            if await self.on_message(message):
                handled += 1
        return handled

    async def on_message(self, message: SignalMessage) -> bool:
        if not message.id or message.id in self.processed_ids:
            return False
        self.processed_ids.add(message.id)

        if message.sender == self.participant_id:
            return False
        if message.target and message.target != self.participant_id:
            return False
        if not self._accepts(message):
            return False

        handler = self._handlers.get(message.type)
        if handler is None:
            logger.debug(f"[{self.participant_id}] no handler for {message.type}")
            return False

        try:
            await handler(message)
        except Exception:
            logger.exception(f"[{self.participant_id}] handler for {message.type} from {message.sender} failed")
        return True

    def _accepts(self, message: SignalMessage) -> bool:
        if message.type == "offer":
            return self.role == VIEWER and message.from_ == BROADCASTER
        if message.type == "answer":
            return self.role == BROADCASTER and message.from_ == VIEWER
        if message.type == "ice-candidate":
            return True
        if message.type in ("join", "leave"):
            return self.role == BROADCASTER and message.from_ == VIEWER
        return False

    async def _run(self) -> None:
        while True:
            message = await self._inbox.get()
            try:
                await self.on_message(message)
            finally:
                self._inbox.task_done()

    async def drain(self) -> None:
        """Wait until everything delivered so far has been processed."""
        await self._inbox.join()
