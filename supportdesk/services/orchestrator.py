# supportdesk/services/orchestrator.py
"""
Inbound message orchestration.

One inbound message becomes zero or more outbound AGENT messages:

  * interrupted conversations and operator (USER) messages never reach the
    assistant; the inbound message is stored and a USER message marks the
    conversation interrupted and OPEN. A CONTACT message on an interrupted
    conversation leaves the conversation row untouched.
  * otherwise the assistant runs to completion first and only then is the
    whole exchange (inbound + replies) written in one transaction. A failed
    run writes nothing.

Reply i is stamped inbound.created_at + 1 + i, so an exchange is totally
ordered even when everything happens within the same millisecond.
"""
from dataclasses import dataclass, field, asdict
from typing import Callable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from supportdesk.errors import ValidationFailure
from supportdesk.services.assistant import AssistantClient, Citation, default_client
from supportdesk.storage import repository
from supportdesk.storage.models import (
    Conversation, ConversationChannel, Message, MessageCreator, now_ms,
)
from supportdesk.util.ids import create_id
from supportdesk.util.logger import get_logger

log = get_logger("orchestrator")

MESSAGE_VERSION = 1
INBOUND_CREATORS = (MessageCreator.CONTACT, MessageCreator.USER)


@dataclass
class OutboundMessage:
    id: str
    conversation_id: str
    message: str
    creator: str
    created_at: int
    citations: List[Citation] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def parse_creator(value) -> MessageCreator:
    try:
        creator = MessageCreator(str(value or "").upper())
    except ValueError:
        raise ValidationFailure(f"unknown creator: {value!r}")
    if creator not in INBOUND_CREATORS:
        raise ValidationFailure(f"inbound messages cannot be authored by {creator.value}")
    return creator


def _new_message(conversation_id: str, text: str, creator: MessageCreator, created_at: int) -> Message:
    return Message(
        id=create_id("msg"),
        conversation_id=conversation_id,
        message=text,
        creator=creator.value,
        created_at=created_at,
        version=MESSAGE_VERSION,
    )


def handle_inbound_message(
    db: Session,
    conversation_id: str,
    message_text: str,
    creator,
    assistant_ref: Optional[str] = None,
    *,
    assistant: Optional[AssistantClient] = None,
    clock: Callable[[], int] = now_ms,
) -> List[OutboundMessage]:
    creator = parse_creator(creator)
    conv, org_assistant_id = repository.get_conversation_context(db, conversation_id)
    inbound = _new_message(conv.id, message_text, creator, clock())

    # Escalation gate: a human owns this conversation
    if conv.interrupted or creator is MessageCreator.USER:
        takeover = creator is MessageCreator.USER
        repository.save_exchange(db, conv.id, inbound, [], set_interrupted=takeover, touch=takeover)
        log.info("assistant skipped", {"conversation_id": conv.id, "creator": creator.value,
                                       "interrupted": True})
        return []

    assistant = assistant or default_client()
    thread_id = conv.thread_id
    if not thread_id:
        thread_id = assistant.backend.create_thread()
        repository.set_thread_id(db, conv, thread_id)
        log.info("assistant thread created", {"conversation_id": conv.id, "thread_id": thread_id})

    # AssistantFailure propagates from here: nothing has been written yet
    replies = assistant.run(db, thread_id, assistant_ref or org_assistant_id, conv.contact_id, message_text)

    outbound_rows = [
        _new_message(conv.id, r.text, MessageCreator.AGENT, inbound.created_at + 1 + i)
        for i, r in enumerate(replies)
    ]
    saved = repository.save_exchange(db, conv.id, inbound, outbound_rows)
    log.info("exchange saved", {"conversation_id": conv.id, "replies": len(outbound_rows),
                                "last_message_at": saved[-1].created_at})

    return [
        OutboundMessage(
            id=row.id,
            conversation_id=row.conversation_id,
            message=row.message,
            creator=row.creator,
            created_at=row.created_at,
            citations=reply.citations,
        )
        for row, reply in zip(saved[1:], replies)
    ]


def start_conversation(
    db: Session,
    organisation_id: str,
    *,
    channel: ConversationChannel = ConversationChannel.WEB,
    channel_id: Optional[str] = None,
    contact: Optional[dict] = None,
) -> Conversation:
    """First-contact flow: new contact + conversation for an existing organisation."""
    org = repository.get_organisation(db, organisation_id)
    contact = contact or {}
    c = repository.create_contact(
        db, org.id, name=contact.get("name"), email=contact.get("email"), phone=contact.get("phone"),
    )
    conv = repository.create_conversation(db, org.id, c.id, channel=channel, channel_id=channel_id)
    log.info("conversation started", {"organisation_id": org.id, "conversation_id": conv.id,
                                      "channel": channel.value})
    return conv


def handle_first_contact(
    db: Session,
    organisation_id: str,
    message_text: str,
    creator,
    contact: Optional[dict] = None,
    *,
    assistant: Optional[AssistantClient] = None,
    clock: Callable[[], int] = now_ms,
) -> Tuple[Conversation, List[OutboundMessage]]:
    """
    start_conversation + handle_inbound_message. If the first exchange fails
    the new conversation and contact are dropped again before the error
    propagates.
    """
    parse_creator(creator)
    conv = start_conversation(db, organisation_id, contact=contact)
    conversation_id = conv.id
    try:
        outbound = handle_inbound_message(db, conversation_id, message_text, creator,
                                          assistant=assistant, clock=clock)
    except Exception:
        db.rollback()
        discard_new_conversation(db, conversation_id)
        raise
    return conv, outbound


def discard_new_conversation(db: Session, conversation_id: str) -> None:
    """Cleanup failures are logged, never raised."""
    try:
        if repository.discard_conversation(db, conversation_id):
            log.info("empty conversation discarded", {"conversation_id": conversation_id})
    except SQLAlchemyError:
        log.exception("could not discard conversation", {"conversation_id": conversation_id})
