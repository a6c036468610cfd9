import threading
import uuid
from typing import Any

from fastapi.testclient import TestClient
from sqlmodel import Session, select

from app.core.config import settings
from app.core.context import ServiceContext
from app.core.db import engine
from app.core.events import ChangeType
from app.models import (
    ChatConversation,
    ChatMessageCreate,
    ChatParticipant,
    User,
    UserRole,
)
from app.services import chat as chat_service
from app.services.chatbot import HANDOFF_SUFFIX
from tests.utils.fakes import FakeServices
from tests.utils.user import create_user_with_headers

CHAT_URL = f"{settings.API_V1_STR}/chat"


def open_conversation(client: TestClient, headers: dict[str, str]) -> dict[str, Any]:
    r = client.get(f"{CHAT_URL}/conversation", headers=headers)
    assert r.status_code == 200
    return r.json()


def post_message(
    client: TestClient, headers: dict[str, str], conversation_id: str, content: str, **extra: Any
) -> dict[str, Any]:
    r = client.post(
        f"{CHAT_URL}/conversations/{conversation_id}/messages",
        headers=headers,
        json={"content": content, **extra},
    )
    assert r.status_code == 200
    return r.json()


def read_messages(
    client: TestClient, headers: dict[str, str], conversation_id: str
) -> list[dict[str, Any]]:
    r = client.get(f"{CHAT_URL}/conversations/{conversation_id}/messages", headers=headers)
    assert r.status_code == 200
    return r.json()["data"]


def silence_bot(
    client: TestClient, agency_headers: dict[str, str], conversation_id: str
) -> None:
    r = client.patch(
        f"{CHAT_URL}/conversations/{conversation_id}",
        headers=agency_headers,
        json={"is_bot_active": False},
    )
    assert r.status_code == 200


def test_conversation_created_on_first_access(client: TestClient, db: Session) -> None:
    user, headers = create_user_with_headers(client, db)

    conversation = open_conversation(client, headers)

    assert conversation["user_id"] == str(user.id)
    assert conversation["status"] == "active"
    assert conversation["is_bot_active"] is True
    assert conversation["agency_id"] is None
    participants = db.exec(
        select(ChatParticipant).where(
            ChatParticipant.conversation_id == uuid.UUID(conversation["id"])
        )
    ).all()
    assert [p.user_id for p in participants] == [user.id]

    # Later calls return the same conversation.
    assert open_conversation(client, headers)["id"] == conversation["id"]


def test_agency_has_no_own_conversation(
    client: TestClient, agency_token_headers: dict[str, str]
) -> None:
    r = client.get(f"{CHAT_URL}/conversation", headers=agency_token_headers)
    assert r.status_code == 403


def test_customer_message_gets_bot_reply(
    client: TestClient, db: Session, fake_services: FakeServices
) -> None:
    user, headers = create_user_with_headers(client, db)
    conversation_id = open_conversation(client, headers)["id"]

    message = post_message(
        client, headers, conversation_id, "What do I need for residency?", client_message_id="c-1"
    )

    assert message["sender_type"] == "user"
    assert message["sender_id"] == str(user.id)
    assert message["client_message_id"] == "c-1"
    messages = read_messages(client, headers, conversation_id)
    assert [m["sender_type"] for m in messages] == ["user", "bot"]
    assert messages[1]["content"] == "You will need an apostilled birth certificate."
    assert messages[1]["sender_id"] is None
    assert len(fake_services.requests_to("bot")) == 1


def test_low_confidence_reply_hands_off(
    client: TestClient,
    db: Session,
    fake_services: FakeServices,
    agency_token_headers: dict[str, str],
) -> None:
    _, headers = create_user_with_headers(client, db)
    conversation_id = open_conversation(client, headers)["id"]
    fake_services.bot_reply = {"content": "Maybe.", "confidence": 0.3}

    post_message(client, headers, conversation_id, "Can my spouse apply with me?")

    messages = read_messages(client, headers, conversation_id)
    assert messages[-1]["content"] == "Maybe." + HANDOFF_SUFFIX
    r = client.get(f"{CHAT_URL}/conversation", headers=headers)
    assert r.json()["is_bot_active"] is False

    # With the bot off, further messages get no reply.
    post_message(client, headers, conversation_id, "Hello?")
    assert len(fake_services.requests_to("bot")) == 1
    assert read_messages(client, headers, conversation_id)[-1]["content"] == "Hello?"


def test_agency_message_does_not_trigger_bot(
    client: TestClient,
    db: Session,
    fake_services: FakeServices,
    agency_token_headers: dict[str, str],
) -> None:
    _, headers = create_user_with_headers(client, db)
    conversation_id = open_conversation(client, headers)["id"]

    message = post_message(client, agency_token_headers, conversation_id, "Hi, this is Laura")

    assert message["sender_type"] == "agency"
    assert fake_services.requests_to("bot") == []


def test_other_customer_cannot_access_conversation(client: TestClient, db: Session) -> None:
    _, owner_headers = create_user_with_headers(client, db)
    _, other_headers = create_user_with_headers(client, db)
    conversation_id = open_conversation(client, owner_headers)["id"]

    r = client.get(
        f"{CHAT_URL}/conversations/{conversation_id}/messages", headers=other_headers
    )
    assert r.status_code == 403
    r = client.post(
        f"{CHAT_URL}/conversations/{conversation_id}/messages",
        headers=other_headers,
        json={"content": "intruding"},
    )
    assert r.status_code == 403


def test_empty_message_rejected(client: TestClient, db: Session) -> None:
    _, headers = create_user_with_headers(client, db)
    conversation_id = open_conversation(client, headers)["id"]
    r = client.post(
        f"{CHAT_URL}/conversations/{conversation_id}/messages",
        headers=headers,
        json={"content": ""},
    )
    assert r.status_code == 422


def test_mark_messages_as_read(
    client: TestClient, db: Session, agency_token_headers: dict[str, str]
) -> None:
    _, headers = create_user_with_headers(client, db)
    conversation_id = open_conversation(client, headers)["id"]
    read_url = f"{CHAT_URL}/conversations/{conversation_id}/read"

    post_message(client, headers, conversation_id, "First")
    post_message(client, agency_token_headers, conversation_id, "Agent reply")

    r = client.post(read_url, headers=headers)
    assert r.status_code == 403

    # The customer message and the bot reply are unread; the agency message is not counted.
    r = client.post(read_url, headers=agency_token_headers)
    assert r.status_code == 200
    assert r.json() == {"updated": 2}

    messages = read_messages(client, headers, conversation_id)
    stamps = {m["id"]: m["read_at"] for m in messages}
    assert all(m["read_at"] for m in messages if m["sender_type"] != "agency")
    assert next(m for m in messages if m["sender_type"] == "agency")["read_at"] is None

    # Read timestamps never move once set.
    r = client.post(read_url, headers=agency_token_headers)
    assert r.json() == {"updated": 0}
    again = read_messages(client, headers, conversation_id)
    assert {m["id"]: m["read_at"] for m in again} == stamps


def test_mark_read_up_to_message(
    client: TestClient, db: Session, agency_token_headers: dict[str, str]
) -> None:
    _, headers = create_user_with_headers(client, db)
    conversation_id = open_conversation(client, headers)["id"]
    silence_bot(client, agency_token_headers, conversation_id)
    first = post_message(client, headers, conversation_id, "One")
    post_message(client, headers, conversation_id, "Two")
    read_url = f"{CHAT_URL}/conversations/{conversation_id}/read"

    r = client.post(
        read_url, headers=agency_token_headers, json={"up_to_message_id": first["id"]}
    )
    assert r.json() == {"updated": 1}

    messages = read_messages(client, headers, conversation_id)
    assert messages[0]["read_at"] is not None
    assert messages[1]["read_at"] is None

    r = client.post(
        read_url, headers=agency_token_headers, json={"up_to_message_id": str(uuid.uuid4())}
    )
    assert r.status_code == 404


def test_change_feed_reports_new_messages(
    client: TestClient,
    db: Session,
    service_context: ServiceContext,
    agency_token_headers: dict[str, str],
) -> None:
    _, headers = create_user_with_headers(client, db)
    conversation_id = open_conversation(client, headers)["id"]
    changes_url = f"{CHAT_URL}/conversations/{conversation_id}/changes"
    start = service_context.change_feed.cursor

    post_message(client, headers, conversation_id, "Ping")

    r = client.get(changes_url, headers=headers, params={"after": start})
    assert r.status_code == 200
    content = r.json()
    events = content["data"]
    assert [e["table"] for e in events[:2]] == ["chat_message", "chat_message"]
    assert events[0]["event_type"] == "INSERT"
    assert events[0]["record"]["content"] == "Ping"
    assert events[1]["record"]["sender_type"] == "bot"
    assert [e["cursor"] for e in events] == sorted(e["cursor"] for e in events)
    assert content["cursor"] == events[-1]["cursor"]

    client.post(f"{CHAT_URL}/conversations/{conversation_id}/read", headers=agency_token_headers)
    r = client.get(changes_url, headers=headers, params={"after": content["cursor"]})
    updates = r.json()["data"]
    assert {e["event_type"] for e in updates} == {"UPDATE"}
    assert all(e["record"]["read_at"] for e in updates)

    r = client.get(changes_url, headers=headers, params={"after": r.json()["cursor"]})
    assert r.json()["data"] == []


def test_change_feed_reset_for_unknown_cursor(
    client: TestClient, db: Session, service_context: ServiceContext
) -> None:
    _, headers = create_user_with_headers(client, db)
    conversation_id = open_conversation(client, headers)["id"]
    feed = service_context.change_feed

    r = client.get(
        f"{CHAT_URL}/conversations/{conversation_id}/changes",
        headers=headers,
        params={"after": feed.cursor + 1000},
    )

    assert r.status_code == 200
    content = r.json()
    assert content["reset"] is True
    assert content["data"] == []
    assert content["cursor"] == feed.cursor


def test_list_conversations_unread_first(
    client: TestClient, db: Session, agency_token_headers: dict[str, str]
) -> None:
    _, read_headers = create_user_with_headers(client, db)
    read_id = open_conversation(client, read_headers)["id"]
    silence_bot(client, agency_token_headers, read_id)
    post_message(client, read_headers, read_id, "Already handled")
    client.post(f"{CHAT_URL}/conversations/{read_id}/read", headers=agency_token_headers)

    unread_user, unread_headers = create_user_with_headers(client, db)
    client.put(
        f"{settings.API_V1_STR}/profiles/me",
        headers=unread_headers,
        json={"first_name": "Ana", "last_name": "Pereira"},
    )
    unread_id = open_conversation(client, unread_headers)["id"]
    silence_bot(client, agency_token_headers, unread_id)
    post_message(client, unread_headers, unread_id, "Need help")

    r = client.get(
        f"{CHAT_URL}/conversations", headers=agency_token_headers, params={"limit": 1000}
    )
    assert r.status_code == 200
    summaries = r.json()["data"]
    ids = [s["id"] for s in summaries]
    assert ids.index(unread_id) < ids.index(read_id)
    unread = summaries[ids.index(unread_id)]
    assert unread["unread_count"] == 1
    assert unread["customer_email"] == unread_user.email
    assert unread["customer_name"] == "Ana Pereira"
    assert unread["last_message_preview"] == "Need help"
    assert summaries[ids.index(read_id)]["unread_count"] == 0


def test_list_conversations_requires_agency(client: TestClient, db: Session) -> None:
    _, headers = create_user_with_headers(client, db)
    r = client.get(f"{CHAT_URL}/conversations", headers=headers)
    assert r.status_code == 403


def test_assign_and_release_conversation(
    client: TestClient, db: Session, agency_token_headers: dict[str, str]
) -> None:
    _, headers = create_user_with_headers(client, db)
    conversation_id = open_conversation(client, headers)["id"]
    url = f"{CHAT_URL}/conversations/{conversation_id}"
    agency = client.get(f"{settings.API_V1_STR}/users/me", headers=agency_token_headers).json()

    r = client.patch(url, headers=agency_token_headers, json={"assign_to_me": True})
    assert r.status_code == 200
    assert r.json()["agency_id"] == agency["id"]

    _, other_agency_headers = create_user_with_headers(client, db, role=UserRole.AGENCY)
    r = client.patch(url, headers=other_agency_headers, json={"assign_to_me": False})
    assert r.json()["agency_id"] == agency["id"]

    r = client.patch(url, headers=agency_token_headers, json={"assign_to_me": False})
    assert r.json()["agency_id"] is None

    r = client.patch(url, headers=headers, json={"is_bot_active": False})
    assert r.status_code == 403


def test_concurrent_senders(
    client: TestClient,
    db: Session,
    service_context: ServiceContext,
    agency_token_headers: dict[str, str],
) -> None:
    customer, headers = create_user_with_headers(client, db)
    conversation_id = uuid.UUID(open_conversation(client, headers)["id"])
    silence_bot(client, agency_token_headers, str(conversation_id))
    agency = db.exec(select(User).where(User.email == settings.FIRST_AGENCY_EMAIL)).one()
    senders = [(customer.id, "from customer"), (agency.id, "from agency")]
    errors: list[BaseException] = []
    start = service_context.change_feed.cursor

    def send(sender_id: uuid.UUID, text: str) -> None:
        try:
            with Session(engine) as session:
                conversation = session.get(ChatConversation, conversation_id)
                sender = session.get(User, sender_id)
                assert conversation is not None and sender is not None
                chat_service.send_message(
                    session=session,
                    conversation=conversation,
                    sender=sender,
                    message_in=ChatMessageCreate(content=text),
                    change_feed=service_context.change_feed,
                )
        except BaseException as exc:
            errors.append(exc)

    threads = [threading.Thread(target=send, args=sender) for sender in senders]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    messages = read_messages(client, headers, str(conversation_id))
    assert sorted(m["content"] for m in messages) == ["from agency", "from customer"]
    assert len({m["id"] for m in messages}) == 2
    assert [m["seq"] for m in messages] == [1, 2]
    inserts = [
        event.record["id"]
        for event in service_context.change_feed.events_since(
            start, table="chat_message", conversation_id=conversation_id
        )
        if event.event_type == ChangeType.INSERT
    ]
    assert inserts == [m["id"] for m in messages]
