"""
Client-side controller for one open consultation view.

It keeps a local, ordered copy of the message log and the session state,
fed by an initial fetch plus channel events, and exposes the actions the
UI needs. All methods run on the caller's event loop and never block it.
"""
import asyncio
import sys
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set
from uuid import UUID, uuid4

from app.client.gateway import ConsultationGateway
from app.core.exceptions import (
    ChannelUnavailable,
    ConsultationError,
    InvalidMessage,
    InvalidPhase,
    InvalidReference,
    OutOfWindow,
    Unauthorized,
)
from app.core.logger import get_logger
from app.db.models import MessageStatus, MessageType, STATUS_RANK, SessionPhase, TERMINAL_PHASES
from app.realtime.subscription import Subscription
from app.schemas.consultation import SessionState
from app.schemas.message import AttachmentRef, MessageResponse
from app.services.presence_service import PHASE_RANK, join_window_open, seconds_until_join_window

logger = get_logger("client")

# Optimistic entries sort after everything the store has acknowledged
PENDING_SEQ = sys.maxsize

# Errors that will fail the same way on retry; the optimistic entry is dropped
REJECTIONS = (InvalidMessage, InvalidReference, Unauthorized)


class ClientSessionController:
    def __init__(
        self,
        gateway: ConsultationGateway,
        clock: Callable[[], datetime] = datetime.utcnow,
        auto_ack_delivery: bool = False,
        on_change: Optional[Callable[["ClientSessionController"], None]] = None,
        on_call_teardown: Optional[Callable[[SessionState], None]] = None,
    ):
        self.gateway = gateway
        self.consultation_id = gateway.consultation_id
        self.user_id = gateway.caller.user_id
        self.clock = clock
        self.auto_ack_delivery = auto_ack_delivery
        self.on_change = on_change
        self.on_call_teardown = on_call_teardown

        self.state: Optional[SessionState] = None
        self.call_active = False
        self.sends_disabled = False
        self.live_updates_available = True
        self.last_error: Optional[ConsultationError] = None
        self.mounted = False

        self._view: List[MessageResponse] = []
        self._pending: Set[UUID] = set()
        self._buffering = False
        self._buffer: List[tuple] = []
        self._subscriptions: List[Subscription] = []
        self._ack_tasks: Set[asyncio.Task] = set()

    # lifecycle

    async def mount(self):
        """
        Subscribe first and buffer, then load state and history, then replay
        the buffer. Upserts by id make the replay safe even when the loaded
        history already contains a buffered event.
        """
        if self.mounted:
            return
        self._buffering = True
        try:
            self._subscriptions.append(await self.gateway.subscribe_messages(
                on_insert=self._on_message,
                on_update=self._on_message,
                on_resync=self._on_resync,
                on_failure=self._on_failure,
            ))
            self._subscriptions.append(await self.gateway.subscribe_presence(
                on_phase=self._on_phase,
                on_resync=self._on_resync,
                on_failure=self._on_failure,
            ))
            await self._load()
        except BaseException:
            await self._release()
            raise
        self.mounted = True
        self._buffering = False
        buffered, self._buffer = self._buffer, []
        for apply, item in buffered:
            apply(item)
        logger.info(f"Mounted consultation {self.consultation_id} with {len(self._view)} message(s)")

    async def unmount(self):
        await self._release()
        self.mounted = False

    async def _release(self):
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            await self.gateway.unsubscribe(subscription)
        tasks, self._ack_tasks = self._ack_tasks, set()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._buffering = False
        self._buffer = []

    async def _load(self):
        state = await self.gateway.get_state()
        history = await self.gateway.list_messages()
        self._apply_state(state)
        self._replace_history(history)

    # views

    @property
    def messages(self) -> List[MessageResponse]:
        return list(self._view)

    @property
    def phase(self) -> Optional[SessionPhase]:
        return self.state.phase if self.state else None

    def can_join(self, now: Optional[datetime] = None) -> bool:
        if self.state is None or self.state.phase in TERMINAL_PHASES:
            return False
        return join_window_open(self.state.scheduled_at, now or self.clock())

    def seconds_until_join(self, now: Optional[datetime] = None) -> int:
        if self.state is None:
            return 0
        return seconds_until_join_window(self.state.scheduled_at, now or self.clock())

    # actions

    async def send_message(self, content: str, message_type: MessageType = MessageType.TEXT,
                           attachment: Optional[AttachmentRef] = None,
                           reply_to_message_id: Optional[UUID] = None) -> MessageResponse:
        now = self.clock()
        # The local id doubles as the idempotency key, so resends and late
        # acknowledgements resolve to the same stored message
        key = uuid4()
        optimistic = MessageResponse(
            id=key,
            consultation_id=self.consultation_id,
            seq=PENDING_SEQ,
            sender_id=self.user_id,
            sender_name=self.gateway.caller.name,
            sender_role=self.gateway.caller.role,
            content=content,
            message_type=message_type,
            status=MessageStatus.SENT,
            attachment=attachment,
            reply_to_message_id=reply_to_message_id,
            client_message_id=key,
            created_at=now,
            updated_at=now,
        )
        return await self._deliver(optimistic)

    async def retry(self, message_id: UUID) -> MessageResponse:
        """Resend a message whose earlier send failed."""
        failed = self._find(message_id)
        if failed is None or failed.status != MessageStatus.FAILED:
            raise InvalidMessage("Only failed messages can be retried")
        return await self._deliver(failed.model_copy(update={"status": MessageStatus.SENT}))

    async def _deliver(self, optimistic: MessageResponse) -> MessageResponse:
        if self.sends_disabled:
            error = InvalidPhase("Consultation has ended; messages can no longer be sent")
            self.last_error = error
            raise error

        self._pending.add(optimistic.id)
        self._upsert(optimistic)
        self._notify()

        try:
            stored = await self.gateway.send_message(
                optimistic.content,
                optimistic.message_type,
                attachment=optimistic.attachment,
                reply_to_message_id=optimistic.reply_to_message_id,
                client_message_id=optimistic.client_message_id,
            )
        except InvalidPhase as e:
            self._discard(optimistic.id)
            self.sends_disabled = True
            self.last_error = e
            self._notify()
            raise
        except REJECTIONS as e:
            self._discard(optimistic.id)
            self.last_error = e
            self._notify()
            raise
        except Exception as e:
            self._mark_failed(optimistic.id)
            if isinstance(e, ConsultationError):
                self.last_error = e
            self._notify()
            raise

        self._discard(optimistic.id)
        self._upsert(stored)
        self._notify()
        return stored

    async def mark_read(self, message_id: UUID) -> MessageResponse:
        stored = await self.gateway.mark_read(message_id)
        self._upsert(stored)
        self._notify()
        return stored

    async def report_join(self) -> SessionState:
        try:
            state = await self.gateway.report_join()
        except (OutOfWindow, InvalidPhase) as e:
            self.last_error = e
            raise
        self._apply_state(state)
        return state

    async def report_leave(self) -> SessionState:
        state = await self.gateway.report_leave()
        self._apply_state(state)
        return state

    async def report_end(self) -> SessionState:
        state = await self.gateway.report_end()
        self._apply_state(state)
        return state

    async def refresh(self):
        await self._load()

    # channel callbacks

    def _on_message(self, message: MessageResponse):
        if self._buffering:
            self._buffer.append((self._apply_message, message))
            return
        self._apply_message(message)

    def _on_phase(self, state: SessionState):
        if self._buffering:
            self._buffer.append((self._apply_state, state))
            return
        self._apply_state(state)

    async def _on_resync(self):
        if self._buffering:
            # The initial load is still running and will pick everything up
            return
        logger.info(f"Resyncing consultation {self.consultation_id}")
        self.live_updates_available = True
        await self._load()

    def _on_failure(self):
        self.live_updates_available = False
        self.last_error = ChannelUnavailable("Live updates unavailable, please refresh")
        logger.warning(f"Live updates lost for consultation {self.consultation_id}")
        self._notify()

    # local view

    def _apply_message(self, message: MessageResponse):
        self._upsert(message)
        if (
            self.auto_ack_delivery
            and message.sender_id != self.user_id
            and message.status == MessageStatus.SENT
        ):
            task = asyncio.create_task(self._ack_delivery(message.id))
            self._ack_tasks.add(task)
            task.add_done_callback(self._ack_tasks.discard)
        self._notify()

    async def _ack_delivery(self, message_id: UUID):
        try:
            stored = await self.gateway.mark_delivered(message_id)
        except ConsultationError as e:
            logger.warning(f"Delivery receipt for {message_id} rejected: {e.message}")
            return
        self._upsert(stored)
        self._notify()

    def _apply_state(self, state: SessionState):
        current = self.state
        if current is not None:
            if PHASE_RANK[state.phase] < PHASE_RANK[current.phase]:
                return
            if state.updated_at and current.updated_at and state.updated_at < current.updated_at:
                return
        self.state = state

        if state.phase == SessionPhase.IN_PROGRESS:
            self.call_active = True
        elif state.phase in TERMINAL_PHASES:
            was_active = self.call_active
            self.call_active = False
            self.sends_disabled = True
            if was_active and self.on_call_teardown is not None:
                self.on_call_teardown(state)
        self._notify()

    def _replace_history(self, history: List[MessageResponse]):
        known: Dict[UUID, MessageResponse] = {m.id: m for m in self._view}
        stored_ids = {m.id for m in history}
        acknowledged = {m.client_message_id for m in history if m.client_message_id is not None}
        self._pending -= acknowledged
        merged = []
        for message in history:
            existing = known.get(message.id)
            merged.append(self._merge(existing, message) if existing else message)
        # Local-only entries: sends in flight and failed sends awaiting a retry
        merged.extend(
            m for m in self._view
            if m.id not in acknowledged
            and (m.id in self._pending or (m.status == MessageStatus.FAILED and m.id not in stored_ids))
        )
        merged.sort(key=lambda m: m.order_key)
        self._view = merged
        self._notify()

    @staticmethod
    def _merge(existing: MessageResponse, incoming: MessageResponse) -> MessageResponse:
        # A late duplicate must not walk the status backwards
        if STATUS_RANK[incoming.status] < STATUS_RANK[existing.status]:
            return incoming.model_copy(update={"status": existing.status})
        return incoming

    def _find(self, message_id: UUID) -> Optional[MessageResponse]:
        for message in self._view:
            if message.id == message_id:
                return message
        return None

    def _upsert(self, message: MessageResponse):
        key = message.client_message_id
        if key is not None and key != message.id:
            # Stored copy of a local entry, possibly one already marked failed
            self._pending.discard(key)
            self._view = [m for m in self._view if m.id != key]
        for index, existing in enumerate(self._view):
            if existing.id == message.id:
                self._view[index] = self._merge(existing, message)
                break
        else:
            self._view.append(message)
        if not self._is_ordered():
            self._view.sort(key=lambda m: m.order_key)

    def _is_ordered(self) -> bool:
        return all(a.order_key <= b.order_key for a, b in zip(self._view, self._view[1:]))

    def _discard(self, message_id: UUID):
        self._pending.discard(message_id)
        self._view = [m for m in self._view if m.id != message_id]

    def _mark_failed(self, message_id: UUID):
        self._pending.discard(message_id)
        for index, message in enumerate(self._view):
            if message.id == message_id:
                # Failed entries stay visible so the UI can offer a retry
                self._view[index] = message.model_copy(update={"status": MessageStatus.FAILED})

    def _notify(self):
        if self.on_change is not None:
            self.on_change(self)
