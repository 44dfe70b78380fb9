from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as SchemaError

from attachments import ImageAttachment
from errors import (
    EmptyMessage,
    InvalidChatName,
    MissingParticipants,
    NoActiveChat,
    TransactionFailed,
    TransportError,
    ValidationError,
)
from profiles import USERS, UserProfile, now_ms, sort_people
from realtime import Query, RealtimeStore, Snapshot, StoreError, Subscription, Upsert

LOGGER = logging.getLogger("chatsync.workspace")

CHATS = "chats"
MESSAGES = "messages"


def new_record_id() -> str:
    return str(uuid.uuid4())


class ChatRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    participants: Tuple[str, ...] = ()
    created_at: Optional[int] = None
    last_message_at: Optional[int] = None


class MessageRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    chat_id: str
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    content: Optional[str] = None
    attachments: Tuple[ImageAttachment, ...] = ()
    created_at: Optional[int] = None


class WorkspaceView(BaseModel):
    model_config = ConfigDict(frozen=True)

    current_user: Optional[UserProfile] = None
    people: Tuple[UserProfile, ...] = ()
    chats: Tuple[ChatRecord, ...] = ()
    active_chat_id: Optional[str] = None
    active_chat: Optional[ChatRecord] = None
    messages: Tuple[MessageRecord, ...] = ()


# =========================
# Projection (pure)
# =========================
def chat_recency_key(chat: ChatRecord) -> Tuple[int, str]:
    return (-(chat.last_message_at or 0), chat.id)


def message_order_key(message: MessageRecord) -> Tuple[int, str]:
    return (message.created_at or 0, message.id)


def visible_chats(records: Iterable[Mapping[str, Any]], user_id: str) -> Tuple[ChatRecord, ...]:
    chats = (ChatRecord.model_validate(r) for r in records)
    return tuple(sorted((c for c in chats if user_id in c.participants), key=chat_recency_key))


def resolve_active_chat(chats: Sequence[ChatRecord], selected_id: Optional[str]) -> Optional[str]:
    if selected_id and any(chat.id == selected_id for chat in chats):
        return selected_id
    if not chats:
        return None
    return min(chats, key=chat_recency_key).id


def order_messages(records: Iterable[Union[MessageRecord, Mapping[str, Any]]]) -> Tuple[MessageRecord, ...]:
    messages = (r if isinstance(r, MessageRecord) else MessageRecord.model_validate(r) for r in records)
    return tuple(sorted(messages, key=message_order_key))


def project_view(
    chat_records: Iterable[Mapping[str, Any]],
    message_records: Iterable[Mapping[str, Any]],
    user_records: Iterable[Mapping[str, Any]],
    selected_id: Optional[str],
    user_id: str,
) -> WorkspaceView:
    chats = visible_chats(chat_records, user_id)
    active_id = resolve_active_chat(chats, selected_id)
    active = next((c for c in chats if c.id == active_id), None)
    # a snapshot from the previously resolved chat must never leak into the view
    messages = order_messages(r for r in message_records if r.get("chat_id") == active_id) if active_id else ()
    people = tuple(sort_people(UserProfile.model_validate(r) for r in user_records if r.get("id")))
    return WorkspaceView(
        current_user=next((p for p in people if p.id == user_id), None),
        people=people,
        chats=chats,
        active_chat_id=active_id,
        active_chat=active,
        messages=messages,
    )


# =========================
# Session
# =========================
class WorkspaceSession:
    """
    One open workspace for one signed-in profile.

    Holds live subscriptions on users and chats, plus one on the messages of the
    resolved chat. Every snapshot or selection change re-projects the view and
    hands it to `on_view` when it changed. Writes go straight to the store; the
    view only reflects them once the store delivers the next snapshot.
    """

    def __init__(
        self,
        store: RealtimeStore,
        current_user: UserProfile,
        on_view: Optional[Callable[[WorkspaceView], None]] = None,
        clock: Callable[[], int] = now_ms,
        new_id: Callable[[], str] = new_record_id,
    ):
        self.store = store
        self.current_user = current_user
        self.on_view = on_view
        self.clock = clock
        self.new_id = new_id
        self.selected_chat_id: Optional[str] = None

        self._opened = False
        self._view: Optional[WorkspaceView] = None
        self._chat_records: Snapshot = ()
        self._user_records: Snapshot = ()
        self._message_records: Snapshot = ()
        self._users_sub: Optional[Subscription] = None
        self._chats_sub: Optional[Subscription] = None
        self._messages_sub: Optional[Subscription] = None
        self._messages_chat_id: Optional[str] = None

    @property
    def user_id(self) -> str:
        return self.current_user.id

    @property
    def view(self) -> WorkspaceView:
        if self._view is None:
            return self._project()
        return self._view

    @property
    def resolved_chat_id(self) -> Optional[str]:
        return self.view.active_chat_id

    def open(self) -> "WorkspaceSession":
        try:
            self._users_sub = self.store.subscribe(Query.on(USERS), self._on_users)
            self._chats_sub = self.store.subscribe(Query.on(CHATS), self._on_chats)
            self._opened = True
            self._refresh()
        except StoreError as e:
            self.close()
            raise TransportError() from e
        LOGGER.info("workspace opened user=%s", self.user_id)
        return self

    def close(self) -> None:
        self._opened = False
        for sub in (self._messages_sub, self._chats_sub, self._users_sub):
            if sub is not None:
                sub.close()
        self._messages_sub = self._chats_sub = self._users_sub = None
        self._messages_chat_id = None

    def select_chat(self, chat_id: Optional[str]) -> WorkspaceView:
        self.selected_chat_id = (chat_id or "").strip() or None
        try:
            self._refresh()
        except StoreError as e:
            raise TransportError() from e
        return self.view

    # ---- writes ----

    def create_chat(
        self,
        name: str,
        participant_ids: Sequence[str],
        initial_message: Optional[str] = None,
    ) -> str:
        chat_name = (name or "").strip()
        if not chat_name:
            raise InvalidChatName()
        requested = [p.strip() for p in (participant_ids or []) if p and p.strip()]
        if not requested:
            raise MissingParticipants()
        # creator always takes part; keep caller order, drop duplicates
        participants = list(dict.fromkeys([*requested, self.user_id]))

        chat_id = self.new_id()
        ts = self.clock()
        upserts = [
            Upsert(
                CHATS,
                chat_id,
                {
                    "id": chat_id,
                    "name": chat_name,
                    "participants": participants,
                    "created_at": ts,
                    "last_message_at": ts,
                },
            )
        ]
        first_message = (initial_message or "").strip()
        if first_message:
            message_id = self.new_id()
            upserts.append(Upsert(MESSAGES, message_id, self._message_fields(message_id, chat_id, first_message, (), ts)))

        self._transact(upserts)
        LOGGER.info("chat created id=%s by=%s participants=%s", chat_id, self.user_id, len(participants))
        self.select_chat(chat_id)
        return chat_id

    def send_message(
        self,
        text: Optional[str] = None,
        attachments: Optional[Sequence[Union[ImageAttachment, Mapping[str, Any]]]] = None,
    ) -> MessageRecord:
        active = self.view.active_chat
        if active is None:
            raise NoActiveChat()
        content = (text or "").strip() or None
        try:
            items = tuple(
                a if isinstance(a, ImageAttachment) else ImageAttachment.model_validate(a) for a in (attachments or ())
            )
        except SchemaError as e:
            raise ValidationError("One of the attachments is invalid. Upload it again.") from e
        if content is None and not items:
            raise EmptyMessage()

        message_id = self.new_id()
        # last_message_at never moves backwards, even if the local clock does
        ts = max(self.clock(), active.last_message_at or 0)
        fields = self._message_fields(message_id, active.id, content, items, ts)
        self._transact(
            [
                Upsert(MESSAGES, message_id, fields),
                Upsert(CHATS, active.id, {"last_message_at": ts}),
            ]
        )
        return MessageRecord.model_validate(fields)

    # ---- internals ----

    def _message_fields(
        self,
        message_id: str,
        chat_id: str,
        content: Optional[str],
        attachments: Tuple[ImageAttachment, ...],
        ts: int,
    ) -> dict:
        fields = {
            "id": message_id,
            "chat_id": chat_id,
            "sender_id": self.user_id,
            "sender_name": self.current_user.display_name,
            "created_at": ts,
        }
        if content:
            fields["content"] = content
        if attachments:
            fields["attachments"] = [a.model_dump(mode="json") for a in attachments]
        return fields

    def _transact(self, upserts: List[Upsert]) -> None:
        try:
            self.store.transact(upserts)
        except StoreError as e:
            LOGGER.warning("transaction failed user=%s records=%s: %s", self.user_id, len(upserts), e)
            raise TransactionFailed() from e

    def _on_users(self, snapshot: Snapshot) -> None:
        self._user_records = snapshot
        self._refresh()

    def _on_chats(self, snapshot: Snapshot) -> None:
        self._chat_records = snapshot
        self._refresh()

    def _messages_listener(self, chat_id: str) -> Callable[[Snapshot], None]:
        def deliver(snapshot: Snapshot) -> None:
            if chat_id != self._messages_chat_id:
                return
            self._message_records = snapshot
            self._refresh()

        return deliver

    def _swap_messages(self, chat_id: Optional[str]) -> None:
        if self._messages_sub is not None:
            self._messages_sub.close()
            self._messages_sub = None
        self._messages_chat_id = chat_id
        self._message_records = ()
        if chat_id is None:
            return
        LOGGER.debug("messages subscription user=%s chat=%s", self.user_id, chat_id)
        try:
            self._messages_sub = self.store.subscribe(Query.on(MESSAGES, chat_id=chat_id), self._messages_listener(chat_id))
        except StoreError:
            self._messages_chat_id = None
            raise

    def _project(self) -> WorkspaceView:
        return project_view(
            self._chat_records,
            self._message_records,
            self._user_records,
            self.selected_chat_id,
            self.user_id,
        )

    def _refresh(self) -> None:
        if not self._opened:
            return
        resolved = resolve_active_chat(visible_chats(self._chat_records, self.user_id), self.selected_chat_id)
        if resolved != self._messages_chat_id:
            self._swap_messages(resolved)
        view = self._project()
        if view.current_user is not None:
            self.current_user = view.current_user
        if view == self._view:
            return
        self._view = view
        if self.on_view is not None:
            self.on_view(view)
