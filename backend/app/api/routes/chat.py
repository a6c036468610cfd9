import uuid
from typing import Any

from fastapi import APIRouter, BackgroundTasks, HTTPException

from app.api.deps import AgencyUser, ContextDep, CurrentUser, SessionDep
from app.models import (
    ChangeEventPublic,
    ChangeEventsPublic,
    ChatConversation,
    ChatConversationPublic,
    ChatConversationSummaries,
    ChatConversationUpdate,
    ChatMessageCreate,
    ChatMessagePublic,
    ChatMessagesPublic,
    MarkMessagesRead,
    MarkMessagesReadResult,
    SenderType,
    User,
)
from app.services import chat as chat_service
from app.services.chatbot import run_chat_responder
from app.services.exceptions import RecordNotFoundError

router = APIRouter(prefix="/chat", tags=["chat"])


def get_accessible_conversation(
    *, session: SessionDep, current_user: User, conversation_id: uuid.UUID
) -> ChatConversation:
    conversation = session.get(ChatConversation, conversation_id)
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if not current_user.is_agency and conversation.user_id != current_user.id:
        raise HTTPException(status_code=403, detail="Not enough permissions")
    return conversation


@router.get("/conversation", response_model=ChatConversationPublic)
def read_my_conversation(session: SessionDep, current_user: CurrentUser) -> Any:
    """
    The customer's active conversation, opened on first access.
    """
    if current_user.is_agency:
        raise HTTPException(
            status_code=403, detail="Agency users do not have their own conversation"
        )
    return chat_service.get_or_create_conversation(session=session, user=current_user)


@router.get("/conversations", response_model=ChatConversationSummaries)
def read_conversations(
    session: SessionDep, current_user: AgencyUser, skip: int = 0, limit: int = 100
) -> Any:
    return chat_service.list_conversations_with_profiles(
        session=session, skip=skip, limit=limit
    )


@router.patch("/conversations/{conversation_id}", response_model=ChatConversationPublic)
def update_conversation(
    *,
    session: SessionDep,
    current_user: AgencyUser,
    context: ContextDep,
    conversation_id: uuid.UUID,
    conversation_in: ChatConversationUpdate,
) -> Any:
    """
    Re-enable the bot or take over the conversation.
    """
    conversation = get_accessible_conversation(
        session=session, current_user=current_user, conversation_id=conversation_id
    )
    return chat_service.update_conversation(
        session=session,
        conversation=conversation,
        conversation_in=conversation_in,
        agency_user=current_user,
        change_feed=context.change_feed,
    )


@router.get(
    "/conversations/{conversation_id}/messages", response_model=ChatMessagesPublic
)
def read_messages(
    session: SessionDep, current_user: CurrentUser, conversation_id: uuid.UUID
) -> Any:
    get_accessible_conversation(
        session=session, current_user=current_user, conversation_id=conversation_id
    )
    messages = chat_service.list_messages(
        session=session, conversation_id=conversation_id
    )
    return ChatMessagesPublic(data=messages, count=len(messages))


@router.post(
    "/conversations/{conversation_id}/messages", response_model=ChatMessagePublic
)
def send_message(
    *,
    session: SessionDep,
    current_user: CurrentUser,
    context: ContextDep,
    background_tasks: BackgroundTasks,
    conversation_id: uuid.UUID,
    message_in: ChatMessageCreate,
) -> Any:
    conversation = get_accessible_conversation(
        session=session, current_user=current_user, conversation_id=conversation_id
    )
    message = chat_service.send_message(
        session=session,
        conversation=conversation,
        sender=current_user,
        message_in=message_in,
        change_feed=context.change_feed,
    )
    if (
        SenderType(message.sender_type) == SenderType.USER
        and conversation.is_bot_active
    ):
        background_tasks.add_task(
            run_chat_responder,
            conversation.id,
            context.responder,
            context.change_feed,
        )
    return message


@router.post(
    "/conversations/{conversation_id}/read", response_model=MarkMessagesReadResult
)
def mark_messages_as_read(
    *,
    session: SessionDep,
    current_user: AgencyUser,
    context: ContextDep,
    conversation_id: uuid.UUID,
    body: MarkMessagesRead | None = None,
) -> Any:
    """
    Mark customer and bot messages as read by the agency, up to now or up to a given message.
    """
    get_accessible_conversation(
        session=session, current_user=current_user, conversation_id=conversation_id
    )
    try:
        updated = chat_service.mark_messages_as_read(
            session=session,
            conversation_id=conversation_id,
            change_feed=context.change_feed,
            up_to_message_id=body.up_to_message_id if body else None,
        )
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message)
    return MarkMessagesReadResult(updated=updated)


@router.get(
    "/conversations/{conversation_id}/changes", response_model=ChangeEventsPublic
)
def read_changes(
    session: SessionDep,
    current_user: CurrentUser,
    context: ContextDep,
    conversation_id: uuid.UUID,
    after: int = 0,
) -> Any:
    """
    Message and conversation changes published after the ``after`` cursor, in commit order.

    ``reset`` is true when part of that history is gone; reload the
    messages and continue polling from the returned cursor.
    """
    get_accessible_conversation(
        session=session, current_user=current_user, conversation_id=conversation_id
    )
    batch = context.change_feed.poll(after, conversation_id=conversation_id)
    return ChangeEventsPublic(
        data=[
            ChangeEventPublic(
                cursor=event.cursor,
                table=event.table,
                event_type=event.event_type.value,
                record=event.record,
            )
            for event in batch.events
        ],
        cursor=batch.cursor,
        reset=batch.reset,
    )
