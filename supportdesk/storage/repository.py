# supportdesk/storage/repository.py
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from supportdesk.errors import NotFound
from supportdesk.util.ids import create_id
from supportdesk.storage.models import (
    Organisation, User, Contact, Conversation, Message, OrganisationFile,
    ConversationStatus, ConversationChannel, UserRole, now_ms,
)

ORGANISATION_FIELDS = (
    "name", "assistant_id", "logo_url", "primary_color", "website",
    "slack_team_id", "support_email",
)
CONTACT_DETAIL_FIELDS = ("name", "email", "phone")


# --------- organisations ----------
def get_organisation(db: Session, organisation_id: str) -> Organisation:
    org = db.get(Organisation, organisation_id)
    if not org:
        raise NotFound("organisation", organisation_id)
    return org


def create_organisation(db: Session, fields: dict) -> Organisation:
    org = Organisation(id=create_id("org"), **{k: fields.get(k) for k in ORGANISATION_FIELDS})
    db.add(org)
    db.commit()
    db.refresh(org)
    return org


def organisation_to_dict(org: Organisation) -> dict:
    d = {"id": org.id, "created_at": org.created_at}
    d.update({k: getattr(org, k) for k in ORGANISATION_FIELDS})
    return d


def all_organisations(db: Session) -> List[Organisation]:
    return db.query(Organisation).order_by(Organisation.name.asc()).all()


def replace_organisation_files(db: Session, organisation_id: str, rows: Sequence[dict]) -> None:
    db.query(OrganisationFile).filter(OrganisationFile.organisation_id == organisation_id).delete()
    for r in rows:
        db.add(OrganisationFile(
            id=r["id"], organisation_id=organisation_id, url=r.get("url"), content=r.get("content"),
        ))
    db.commit()


def file_urls(db: Session, file_ids: Iterable[str]) -> Dict[str, str]:
    ids = [f for f in set(file_ids) if f]
    if not ids:
        return {}
    rows = db.query(OrganisationFile).filter(OrganisationFile.id.in_(ids)).all()
    return {r.id: (r.url or "") for r in rows}


# --------- users ----------
def find_user_by_email(db: Session, email: str, organisation_id: Optional[str] = None) -> Optional[User]:
    q = db.query(User).filter(User.email == (email or "").strip().lower())
    if organisation_id:
        q = q.filter(User.organisation_id == organisation_id)
    return q.first()


def is_admin(db: Session, email: str, organisation_id: str = "", super_admin_only: bool = False) -> bool:
    """
    Super admins may act on every organisation. Otherwise the user must be an
    ADMIN of the given organisation.
    """
    users = db.query(User).filter(User.email == (email or "").strip().lower()).all()
    if any(u.role == UserRole.SUPER_ADMIN.value for u in users):
        return True
    if super_admin_only or not organisation_id:
        return False
    return any(u.role == UserRole.ADMIN.value and u.organisation_id == organisation_id for u in users)


def users_for_organisation(db: Session, organisation_id: str) -> List[User]:
    return db.query(User).filter(User.organisation_id == organisation_id).all()


def super_admins(db: Session) -> List[User]:
    return db.query(User).filter(User.role == UserRole.SUPER_ADMIN.value).all()


# --------- contacts ----------
def create_contact(db: Session, organisation_id: str, *, name=None, email=None, phone=None,
                   slack_id=None) -> Contact:
    c = Contact(id=create_id("cont"), organisation_id=organisation_id,
                name=name, email=email, phone=phone, slack_id=slack_id)
    db.add(c)
    db.flush()
    return c


def get_or_create_slack_contact(db: Session, organisation_id: str, slack_id: str, *,
                                name=None, email=None, phone=None) -> Contact:
    c = (
        db.query(Contact)
          .filter(Contact.organisation_id == organisation_id, Contact.slack_id == slack_id)
          .first()
    )
    if c:
        return c
    c = create_contact(db, organisation_id, name=name, email=email or None, phone=phone or None,
                       slack_id=slack_id)
    db.commit()
    return c


def update_contact_details(db: Session, contact_id: str, details: dict) -> dict:
    """Only fields present in `details` are written; the rest keep their value."""
    c = db.get(Contact, contact_id)
    if not c:
        raise NotFound("contact", contact_id)
    saved = {}
    try:
        for k in CONTACT_DETAIL_FIELDS:
            if k in details:
                setattr(c, k, details[k])
                saved[k] = details[k]
        db.commit()
    except Exception:
        db.rollback()
        raise
    return saved


# --------- conversations ----------
def get_conversation_context(db: Session, conversation_id: str) -> Tuple[Conversation, Optional[str]]:
    row = (
        db.query(Conversation, Organisation.assistant_id)
          .join(Organisation, Conversation.organisation_id == Organisation.id)
          .filter(Conversation.id == conversation_id)
          .first()
    )
    if not row:
        raise NotFound("conversation", conversation_id)
    return row[0], row[1]


def find_conversation_by_channel(db: Session, organisation_id: str, channel_id: str) -> Optional[Conversation]:
    return (
        db.query(Conversation)
          .filter(Conversation.organisation_id == organisation_id, Conversation.channel_id == channel_id)
          .first()
    )


def create_conversation(db: Session, organisation_id: str, contact_id: str, *,
                        channel: ConversationChannel = ConversationChannel.WEB,
                        channel_id: Optional[str] = None) -> Conversation:
    ts = now_ms()
    conv = Conversation(
        id=create_id("conv"),
        organisation_id=organisation_id,
        contact_id=contact_id,
        created_at=ts,
        last_message_at=ts,
        interrupted=False,
        status=ConversationStatus.OPEN.value,
        sentiment=0,
        channel=channel.value,
        channel_id=channel_id,
    )
    db.add(conv)
    db.commit()
    db.refresh(conv)
    return conv


def discard_conversation(db: Session, conversation_id: str) -> bool:
    """
    Drop a conversation that never got a message, and its contact when no
    other conversation uses it. Returns False when there was nothing to drop.
    """
    conv = db.get(Conversation, conversation_id)
    if conv is None:
        return False
    if db.query(Message.id).filter(Message.conversation_id == conversation_id).first():
        return False
    contact_id = conv.contact_id
    try:
        db.delete(conv)
        db.flush()
        in_use = db.query(Conversation.id).filter(Conversation.contact_id == contact_id).first()
        contact = None if in_use else db.get(Contact, contact_id)
        if contact is not None:
            db.delete(contact)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return True


def set_thread_id(db: Session, conversation: Conversation, thread_id: str) -> None:
    conversation.thread_id = thread_id
    db.add(conversation)
    db.commit()


def save_exchange(db: Session, conversation_id: str, inbound: Message, outbound: Sequence[Message],
                  *, set_interrupted: bool = False, touch: bool = True) -> List[Message]:
    """
    Insert the inbound message and its replies and bump the conversation, all
    in one transaction. The conversation row is locked and the batch is
    rebased above the stored last_message_at, so a racing writer can never
    interleave timestamps with this batch. Replies keep their offsets
    (inbound + 1 + i).

    touch=False only appends the messages and leaves the conversation row as is.
    The floor also covers messages stored that way, and every message gets the
    next insertion index (seq) as tie-breaker.
    """
    try:
        conv = (
            db.execute(
                select(Conversation)
                .where(Conversation.id == conversation_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
        )
        if conv is None:
            raise NotFound("conversation", conversation_id)

        newest, last_seq = (
            db.query(func.max(Message.created_at), func.max(Message.seq))
              .filter(Message.conversation_id == conversation_id)
              .one()
        )
        floor = max(conv.last_message_at or 0, newest or 0) + 1
        shift = max(0, floor - inbound.created_at)
        batch = [inbound, *outbound]
        seq = last_seq or 0
        for m in batch:
            m.created_at += shift
            seq += 1
            m.seq = seq
            db.add(m)

        if touch:
            conv.last_message_at = max(m.created_at for m in batch)
            conv.status = ConversationStatus.OPEN.value
        if set_interrupted:
            conv.interrupted = True
        db.commit()
    except Exception:
        db.rollback()
        raise
    return batch


def conversation_summary(conv: Conversation, contact_name: Optional[str]) -> dict:
    return {
        "id": conv.id,
        "organisation_id": conv.organisation_id,
        "contact_name": contact_name,
        "created_at": conv.created_at,
        "last_message_at": conv.last_message_at,
        "status": conv.status,
        "summary": conv.summary,
        "sentiment": conv.sentiment,
    }


def list_conversations(db: Session, organisation_id: str, *, since_ms: Optional[int] = None) -> List[dict]:
    q = (
        db.query(Conversation, Contact.name)
          .join(Contact, Conversation.contact_id == Contact.id)
          .filter(Conversation.organisation_id == organisation_id,
                  Conversation.status != ConversationStatus.DRAFT.value)
    )
    if since_ms is not None:
        q = q.filter(Conversation.last_message_at >= since_ms)
    rows = q.order_by(Conversation.last_message_at.desc()).all()
    return [conversation_summary(conv, name) for conv, name in rows]


def message_to_dict(m: Message) -> dict:
    return {
        "id": m.id,
        "conversation_id": m.conversation_id,
        "message": m.message,
        "creator": m.creator,
        "created_at": m.created_at,
    }


def messages_for_conversation(db: Session, conversation_id: str) -> List[dict]:
    msgs = (
        db.query(Message)
          .filter(Message.conversation_id == conversation_id)
          .order_by(Message.created_at.asc(), Message.seq.asc())
          .all()
    )
    return [message_to_dict(m) for m in msgs]


def get_full_conversation(db: Session, conversation_id: str) -> dict:
    conv = db.get(Conversation, conversation_id)
    if not conv:
        raise NotFound("conversation", conversation_id)
    contact = conv.contact
    return {
        "id": conv.id,
        "organisation_id": conv.organisation_id,
        "contact": {
            "id": conv.contact_id,
            "name": contact.name if contact else None,
            "email": contact.email if contact else None,
            "phone": contact.phone if contact else None,
        },
        "messages": messages_for_conversation(db, conv.id),
        "created_at": conv.created_at,
        "last_message_at": conv.last_message_at,
        "status": conv.status,
        "summary": conv.summary,
        "sentiment": conv.sentiment,
        "interrupted": bool(conv.interrupted),
        "channel": conv.channel,
    }
