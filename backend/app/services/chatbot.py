"""Automated first-line responder for customer conversations.

After each customer message the responder reads the whole history, asks
the text-generation service for a reply with a self-reported confidence,
and posts it as a bot message. Low-confidence replies hand the
conversation to a human: the bot is switched off for good and the
agency assignment is cleared.
"""

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass

from sqlmodel import Session

from app.core.config import settings
from app.core.db import engine
from app.core.events import ChangeFeed
from app.models import ChatConversation, ChatMessage, SenderType
from app.services.chat import hand_off_to_agency, list_messages, post_bot_message
from app.services.exceptions import ExternalServiceError
from app.services.llm import LLMClient

logger = logging.getLogger(__name__)

HANDOFF_SUFFIX = "\n\nLet me connect you with a human agent for better assistance."
FALLBACK_REPLY = (
    "I'm sorry, I'm having technical problems. "
    "Please wait for a human agent to assist you."
)


@dataclass(frozen=True)
class BotReply:
    content: str
    confidence: float

    def needs_handoff(self, threshold: float) -> bool:
        return self.confidence < threshold


def build_system_prompt(country: str) -> str:
    return f"You are an assistant specialized in residency procedures in {country}."


def build_prompt(messages: Sequence[ChatMessage], country: str) -> str:
    history = "\n".join(
        f"{SenderType(message.sender_type).value}: {message.content}"
        for message in messages
    )
    return f"""You are an expert assistant for residency procedures in {country}. Answer concisely and professionally.

Conversation history:
{history}

Instructions:
1. Answer in the customer's language
2. Be concise and direct
3. If you are not sure, hand over to the human agent
4. Do not make up information about procedures

Respond in JSON format:
{{
  "content": "your answer",
  "confidence": number between 0 and 1 indicating your confidence in the answer
}}"""


class ChatResponder:
    def __init__(
        self,
        *,
        llm: LLMClient,
        country: str | None = None,
        confidence_threshold: float | None = None,
    ) -> None:
        self.llm = llm
        self.country = country or settings.REVIEW_COUNTRY
        self.confidence_threshold = (
            confidence_threshold
            if confidence_threshold is not None
            else settings.BOT_CONFIDENCE_THRESHOLD
        )

    def generate_reply(self, messages: Sequence[ChatMessage]) -> BotReply:
        """Ask for a reply. Service failures yield the fallback with zero confidence."""
        try:
            reply = self.llm.complete_json(
                system_prompt=build_system_prompt(self.country),
                user_prompt=build_prompt(messages, self.country),
                temperature=settings.LLM_CHAT_TEMPERATURE,
            )
            content = str(reply["content"]).strip()
            confidence = float(reply["confidence"])
        except ExternalServiceError as exc:
            logger.warning("Bot reply failed: %s", exc.message)
            return BotReply(content=FALLBACK_REPLY, confidence=0.0)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Bot reply is malformed: %s", exc)
            return BotReply(content=FALLBACK_REPLY, confidence=0.0)

        if not content:
            return BotReply(content=FALLBACK_REPLY, confidence=0.0)
        return BotReply(content=content, confidence=confidence)

    def respond(
        self,
        *,
        session: Session,
        conversation_id: uuid.UUID,
        change_feed: ChangeFeed,
    ) -> ChatMessage | None:
        """Post a bot reply to the conversation if the bot should answer.

        Returns None when the bot is off or the last message is not from
        the customer.
        """
        conversation = session.get(ChatConversation, conversation_id)
        if conversation is None or not conversation.is_bot_active:
            return None

        messages = list_messages(session=session, conversation_id=conversation_id)
        if not messages or SenderType(messages[-1].sender_type) != SenderType.USER:
            return None

        reply = self.generate_reply(messages)
        content = reply.content
        if reply.needs_handoff(self.confidence_threshold):
            logger.info(
                "Handing conversation %s to an agent (confidence %.2f)",
                conversation_id,
                reply.confidence,
            )
            hand_off_to_agency(
                session=session,
                conversation_id=conversation_id,
                change_feed=change_feed,
            )
            content += HANDOFF_SUFFIX

        return post_bot_message(
            session=session,
            conversation_id=conversation_id,
            content=content,
            change_feed=change_feed,
        )


def run_chat_responder(
    conversation_id: uuid.UUID, responder: ChatResponder, change_feed: ChangeFeed
) -> None:
    with Session(engine) as session:
        try:
            responder.respond(
                session=session,
                conversation_id=conversation_id,
                change_feed=change_feed,
            )
        except Exception:
            logger.exception("Chat responder failed for conversation %s", conversation_id)
            session.rollback()
