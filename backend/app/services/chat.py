"""Conversations and messages between a customer and the agency.

Messages are append-only and numbered per conversation (``seq``) in the
order their inserts commit. Every insert or update of a message or
conversation is published to the change feed after its transaction
commits, so subscribers observe writes in commit order.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, func, select

from app.core.events import ChangeEvent, ChangeFeed, ChangeType
from app.core.retry import with_retry
from app.models import (
    ChatConversation,
    ChatConversationPublic,
    ChatConversationSummaries,
    ChatConversationSummary,
    ChatConversationUpdate,
    ChatMessage,
    ChatMessageCreate,
    ChatMessagePublic,
    ChatParticipant,
    ConversationStatus,
    SenderType,
    User,
    UserProfile,
    UserRole,
    get_datetime_utc,
)
from app.services.exceptions import RecordNotFoundError

logger = logging.getLogger(__name__)

MESSAGE_TABLE = "chat_message"
CONVERSATION_TABLE = "chat_conversation"
PREVIEW_LENGTH = 80


def sender_type_for(user: User) -> SenderType:
    role = UserRole(user.role)
    if role == UserRole.CUSTOMER:
        return SenderType.USER
    if role == UserRole.AGENCY:
        return SenderType.AGENCY
    raise ValueError(f"No sender type for role {role!r}")


def message_record(message: ChatMessage) -> dict[str, Any]:
    return ChatMessagePublic.model_validate(message).model_dump(mode="json")


def conversation_record(conversation: ChatConversation) -> dict[str, Any]:
    return ChatConversationPublic.model_validate(conversation).model_dump(mode="json")


def publish_message(
    change_feed: ChangeFeed, message: ChatMessage, event_type: ChangeType
) -> ChangeEvent:
    return change_feed.publish(
        table=MESSAGE_TABLE,
        event_type=event_type,
        record=message_record(message),
        conversation_id=message.conversation_id,
    )


def publish_conversation(
    change_feed: ChangeFeed, conversation: ChatConversation
) -> ChangeEvent:
    return change_feed.publish(
        table=CONVERSATION_TABLE,
        event_type=ChangeType.UPDATE,
        record=conversation_record(conversation),
        conversation_id=conversation.id,
    )


@with_retry()
def get_active_conversation(
    *, session: Session, user_id: uuid.UUID
) -> ChatConversation | None:
    statement = (
        select(ChatConversation)
        .where(
            ChatConversation.user_id == user_id,
            ChatConversation.status == ConversationStatus.ACTIVE.value,
        )
        .order_by(col(ChatConversation.created_at).desc())
    )
    return session.exec(statement).first()


def get_or_create_conversation(*, session: Session, user: User) -> ChatConversation:
    """Return the customer's active conversation, creating it on first access.

    Creation is two writes. If registering the participant fails the
    conversation is kept and the failure is only logged.
    """
    conversation = get_active_conversation(session=session, user_id=user.id)
    if conversation is not None:
        return conversation

    conversation = ChatConversation(user_id=user.id)
    session.add(conversation)
    session.commit()
    session.refresh(conversation)
    logger.info("Created conversation %s for user %s", conversation.id, user.id)

    try:
        session.add(ChatParticipant(conversation_id=conversation.id, user_id=user.id))
        session.commit()
    except SQLAlchemyError:
        logger.exception(
            "Could not register user %s as participant of conversation %s",
            user.id,
            conversation.id,
        )
        session.rollback()
        session.refresh(conversation)
    return conversation


def _append_message(
    session: Session, message: ChatMessage, change_feed: ChangeFeed
) -> ChatMessage:
    """Insert ``message`` at the end of its conversation and publish it.

    The conversation row is locked and ``seq`` is computed inside the
    INSERT, so positions follow the store's commit order. Commit and
    publish run under the feed's write lock so feed order matches.
    """
    with change_feed.ordered_writes():
        session.exec(
            select(col(ChatConversation.id))
            .where(ChatConversation.id == message.conversation_id)
            .with_for_update()
        ).one()
        message.seq = (  # type: ignore[assignment]
            select(func.coalesce(func.max(ChatMessage.seq), 0) + 1)
            .where(ChatMessage.conversation_id == message.conversation_id)
            .scalar_subquery()
        )
        session.add(message)
        session.commit()
        session.refresh(message)
        publish_message(change_feed, message, ChangeType.INSERT)
    return message


@with_retry()
def list_messages(*, session: Session, conversation_id: uuid.UUID) -> list[ChatMessage]:
    statement = (
        select(ChatMessage)
        .where(ChatMessage.conversation_id == conversation_id)
        .order_by(col(ChatMessage.seq))
    )
    return list(session.exec(statement).all())


@with_retry()
def send_message(
    *,
    session: Session,
    conversation: ChatConversation,
    sender: User,
    message_in: ChatMessageCreate,
    change_feed: ChangeFeed,
) -> ChatMessage:
    message = ChatMessage.model_validate(
        message_in,
        update={
            "conversation_id": conversation.id,
            "sender_id": sender.id,
            "sender_type": sender_type_for(sender).value,
        },
    )
    return _append_message(session, message, change_feed)


@with_retry()
def post_bot_message(
    *,
    session: Session,
    conversation_id: uuid.UUID,
    content: str,
    change_feed: ChangeFeed,
) -> ChatMessage:
    message = ChatMessage(
        conversation_id=conversation_id,
        sender_id=None,
        sender_type=SenderType.BOT.value,
        content=content,
    )
    return _append_message(session, message, change_feed)


@with_retry()
def mark_messages_as_read(
    *,
    session: Session,
    conversation_id: uuid.UUID,
    change_feed: ChangeFeed,
    up_to_message_id: uuid.UUID | None = None,
) -> int:
    """Stamp ``read_at`` on unread customer and bot messages.

    Only messages with no ``read_at`` are touched, so a timestamp is
    never moved or cleared once set.
    """
    statement = select(ChatMessage).where(
        ChatMessage.conversation_id == conversation_id,
        col(ChatMessage.read_at).is_(None),
        ChatMessage.sender_type != SenderType.AGENCY.value,
    )
    if up_to_message_id is not None:
        boundary = session.get(ChatMessage, up_to_message_id)
        if boundary is None or boundary.conversation_id != conversation_id:
            raise RecordNotFoundError("Message not found")
        statement = statement.where(
            col(ChatMessage.seq) <= boundary.seq
        )

    messages = session.exec(
        statement.order_by(col(ChatMessage.seq))
    ).all()
    if not messages:
        return 0

    now = get_datetime_utc()
    for message in messages:
        message.read_at = now
        session.add(message)
    session.commit()
    for message in messages:
        session.refresh(message)
        publish_message(change_feed, message, ChangeType.UPDATE)
    return len(messages)


@with_retry()
def list_conversations_with_profiles(
    *, session: Session, skip: int = 0, limit: int = 100
) -> ChatConversationSummaries:
    """Active conversations with customer details, unread first then most recent."""
    unread = (
        select(
            ChatMessage.conversation_id,
            func.count().label("unread_count"),
        )
        .where(
            col(ChatMessage.read_at).is_(None),
            ChatMessage.sender_type != SenderType.AGENCY.value,
        )
        .group_by(col(ChatMessage.conversation_id))
        .subquery()
    )
    statement = (
        select(ChatConversation, User, UserProfile, unread.c.unread_count)
        .join(User, col(User.id) == ChatConversation.user_id)
        .outerjoin(UserProfile, col(UserProfile.user_id) == ChatConversation.user_id)
        .outerjoin(unread, unread.c.conversation_id == ChatConversation.id)
        .where(ChatConversation.status == ConversationStatus.ACTIVE.value)
    )
    summaries: list[ChatConversationSummary] = []
    for conversation, user, profile, unread_count in session.exec(statement).all():
        last_message = session.exec(
            select(ChatMessage)
            .where(ChatMessage.conversation_id == conversation.id)
            .order_by(col(ChatMessage.seq).desc())
        ).first()
        summaries.append(
            ChatConversationSummary(
                **ChatConversationPublic.model_validate(conversation).model_dump(),
                customer_email=user.email,
                customer_name=_display_name(user, profile),
                unread_count=unread_count or 0,
                last_message_at=last_message.created_at if last_message else None,
                last_message_preview=(
                    last_message.content[:PREVIEW_LENGTH] if last_message else None
                ),
            )
        )

    summaries.sort(key=_summary_sort_key)
    return ChatConversationSummaries(
        data=summaries[skip : skip + limit], count=len(summaries)
    )


@with_retry()
def update_conversation(
    *,
    session: Session,
    conversation: ChatConversation,
    conversation_in: ChatConversationUpdate,
    agency_user: User,
    change_feed: ChangeFeed,
) -> ChatConversation:
    if conversation_in.is_bot_active is not None:
        conversation.is_bot_active = conversation_in.is_bot_active
    if conversation_in.assign_to_me is True:
        conversation.agency_id = agency_user.id
    elif conversation_in.assign_to_me is False and conversation.agency_id == agency_user.id:
        conversation.agency_id = None
    conversation.updated_at = get_datetime_utc()
    session.add(conversation)
    session.commit()
    session.refresh(conversation)
    publish_conversation(change_feed, conversation)
    return conversation


@with_retry()
def hand_off_to_agency(
    *, session: Session, conversation_id: uuid.UUID, change_feed: ChangeFeed
) -> ChatConversation:
    """Turn the bot off and clear the assignment so any agent can pick it up."""
    conversation = session.get(ChatConversation, conversation_id)
    if conversation is None:
        raise RecordNotFoundError("Conversation not found")
    conversation.is_bot_active = False
    conversation.agency_id = None
    conversation.updated_at = get_datetime_utc()
    session.add(conversation)
    session.commit()
    session.refresh(conversation)
    publish_conversation(change_feed, conversation)
    return conversation


def _display_name(user: User, profile: UserProfile | None) -> str | None:
    if profile is not None:
        name = " ".join(part for part in (profile.first_name, profile.last_name) if part)
        if name:
            return name
    return user.full_name


def _summary_sort_key(summary: ChatConversationSummary) -> tuple[bool, float]:
    latest = summary.last_message_at or summary.created_at
    return (summary.unread_count == 0, -latest.timestamp() if latest else 0.0)


# ---------------------------------------------------------------------------
# Client-side timeline
# ---------------------------------------------------------------------------


@dataclass
class TimelineEntry:
    message: ChatMessagePublic
    pending: bool = False


class MessageTimeline:
    """Ordered view of a conversation merging optimistic sends with feed events.

    Entries are keyed by message id. An optimistic entry carries a
    ``client_message_id``; when the stored message (from the send
    response or from the change feed, whichever arrives first) bears the
    same id, it replaces the optimistic entry in place.
    """

    def __init__(self, messages: Iterable[ChatMessagePublic] = ()) -> None:
        self._entries: list[TimelineEntry] = []
        self._by_id: dict[uuid.UUID, TimelineEntry] = {}
        self._pending: dict[str, TimelineEntry] = {}
        for message in messages:
            self._resolve(message)

    @property
    def messages(self) -> list[ChatMessagePublic]:
        return [entry.message for entry in self._entries]

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def add_optimistic(
        self,
        *,
        conversation_id: uuid.UUID,
        sender_type: SenderType,
        content: str,
        sender_id: uuid.UUID | None = None,
    ) -> ChatMessagePublic:
        message = ChatMessagePublic(
            id=uuid.uuid4(),
            conversation_id=conversation_id,
            sender_id=sender_id,
            sender_type=sender_type,
            content=content,
            client_message_id=uuid.uuid4().hex,
            created_at=get_datetime_utc(),
        )
        entry = TimelineEntry(message=message, pending=True)
        self._entries.append(entry)
        self._pending[message.client_message_id or ""] = entry
        return message

    def confirm(self, message: ChatMessagePublic) -> None:
        self._resolve(message)

    def retract(self, client_message_id: str) -> None:
        entry = self._pending.pop(client_message_id, None)
        if entry is not None:
            self._entries.remove(entry)

    def reload(self, messages: Iterable[ChatMessagePublic]) -> None:
        """Rebuild from a fresh message list after the feed reports a reset.

        Sends still awaiting confirmation stay at the end.
        """
        pending = dict(self._pending)
        self._entries, self._by_id, self._pending = [], {}, {}
        for message in messages:
            if message.client_message_id:
                pending.pop(message.client_message_id, None)
            self._resolve(message)
        for client_message_id, entry in pending.items():
            self._entries.append(entry)
            self._pending[client_message_id] = entry

    def apply(self, event: ChangeEvent) -> None:
        if event.table != MESSAGE_TABLE:
            return
        message = ChatMessagePublic.model_validate(event.record)
        existing = self._by_id.get(message.id)
        if event.event_type == ChangeType.UPDATE and existing is not None:
            existing.message = message
            return
        self._resolve(message)

    def _resolve(self, message: ChatMessagePublic) -> None:
        optimistic = (
            self._pending.pop(message.client_message_id, None)
            if message.client_message_id
            else None
        )
        existing = self._by_id.get(message.id)
        if existing is not None:
            existing.message = message
            if optimistic is not None:
                self._entries.remove(optimistic)
            return
        if optimistic is not None:
            optimistic.message = message
            optimistic.pending = False
            self._by_id[message.id] = optimistic
            return
        entry = TimelineEntry(message=message)
        self._entries.append(entry)
        self._by_id[message.id] = entry
