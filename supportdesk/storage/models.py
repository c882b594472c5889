import enum
import time

from sqlalchemy import Column, Integer, BigInteger, String, Boolean, Float, ForeignKey, Text
from sqlalchemy.orm import relationship

from .db import Base


def now_ms() -> int:
    return int(time.time() * 1000)


class MessageCreator(str, enum.Enum):
    CONTACT = "CONTACT"  # the end customer
    USER = "USER"        # a human operator of the organisation
    AGENT = "AGENT"      # the AI assistant


class ConversationStatus(str, enum.Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    DRAFT = "DRAFT"


class ConversationChannel(str, enum.Enum):
    WEB = "WEB"
    SLACK = "SLACK"


class UserRole(str, enum.Enum):
    MEMBER = "MEMBER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class Organisation(Base):
    __tablename__ = "organisations"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    assistant_id = Column(String)
    # branding
    logo_url = Column(String)
    primary_color = Column(String)
    website = Column(String)
    # channel settings
    slack_team_id = Column(String, index=True)
    support_email = Column(String)
    created_at = Column(BigInteger, default=now_ms)

    files = relationship("OrganisationFile", back_populates="organisation")


class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True)
    organisation_id = Column(String, ForeignKey("organisations.id"), index=True)
    name = Column(String)
    email = Column(String, index=True)
    role = Column(String, default=UserRole.MEMBER.value)


class Contact(Base):
    __tablename__ = "contacts"
    id = Column(String, primary_key=True)
    organisation_id = Column(String, ForeignKey("organisations.id"), index=True)
    name = Column(String)
    email = Column(String)
    phone = Column(String)
    slack_id = Column(String, index=True)


class Conversation(Base):
    __tablename__ = "conversations"
    id = Column(String, primary_key=True)
    organisation_id = Column(String, ForeignKey("organisations.id"), index=True)
    contact_id = Column(String, ForeignKey("contacts.id"))
    status = Column(String, default=ConversationStatus.OPEN.value)
    sentiment = Column(Float, default=0)
    summary = Column(Text)
    interrupted = Column(Boolean, default=False, nullable=False)
    channel = Column(String, default=ConversationChannel.WEB.value)
    channel_id = Column(String, index=True)   # slack thread_ts / response_url
    thread_id = Column(String)                # assistant provider thread
    created_at = Column(BigInteger, default=now_ms)
    last_message_at = Column(BigInteger, default=now_ms)

    contact = relationship("Contact")
    organisation = relationship("Organisation")


class Message(Base):
    __tablename__ = "messages"
    id = Column(String, primary_key=True)
    conversation_id = Column(String, ForeignKey("conversations.id"), index=True)
    message = Column(Text)
    creator = Column(String)
    created_at = Column(BigInteger, index=True)
    seq = Column(Integer)  # insertion index within the conversation, 1-based
    version = Column(Integer, default=1)


class OrganisationFile(Base):
    __tablename__ = "organisation_files"
    id = Column(String, primary_key=True)     # provider file id
    organisation_id = Column(String, ForeignKey("organisations.id"), index=True)
    url = Column(String)
    content = Column(Text)

    organisation = relationship("Organisation", back_populates="files")
