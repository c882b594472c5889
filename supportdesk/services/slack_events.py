# supportdesk/services/slack_events.py
from typing import List, Optional

from supportdesk.errors import NotificationFailure
from supportdesk.senders import slack_client
from supportdesk.services.assistant import AssistantClient
from supportdesk.services.orchestrator import OutboundMessage, discard_new_conversation, handle_inbound_message
from supportdesk.storage import repository
from supportdesk.storage.db import SessionLocal
from supportdesk.storage.models import ConversationChannel, MessageCreator
from supportdesk.util.logger import get_logger

log = get_logger("slack_events")

SLASH_EVENT = "Message.Slack"       # slash command, answered via response_url
BOT_EVENT = "Message.SlackBot"      # threaded bot conversation

LINKS_HEADER = "These links might help you:"
CALL_TO_ACTION = "If this solved your question give the message a :white_check_mark:"
APOLOGY = "An error occurred with this message, please contact your administrator."


def format_reply(outbound: List[OutboundMessage]) -> str:
    text = "\n".join(m.message for m in outbound)
    urls = []
    for m in outbound:
        for c in m.citations:
            if c.url and c.url not in urls:
                urls.append(c.url)
    if urls:
        text += f"\n\n{LINKS_HEADER}\n" + "\n".join(urls)
    return text + "\n" + CALL_TO_ACTION


def process_event(event: dict, *, assistant: Optional[AssistantClient] = None) -> None:
    kind = event.get("eventType")
    data = event.get("data") or {}
    if kind == SLASH_EVENT:
        log.info("incoming slack slash command", {"organisation_id": data.get("organisation_id")})
        process_slash_message(data, assistant=assistant)
    elif kind == BOT_EVENT:
        log.info("incoming slackbot message", {"organisation_id": data.get("organisation_id")})
        process_bot_message(data, assistant=assistant)
    else:
        log.warning("don't know how to process this event", {"eventType": kind})


def _apologise(post, *args) -> None:
    try:
        post(*args)
    except NotificationFailure:
        log.exception("could not post apology to slack")


def process_bot_message(data: dict, *, assistant: Optional[AssistantClient] = None) -> None:
    """
    Admin-authored messages never open a conversation; on an existing one
    they go in as USER messages, which interrupts the assistant.
    """
    channel = str(data.get("channel_id") or "")
    thread_ts = str(data.get("thread_ts") or "")
    created = None
    db = SessionLocal()
    try:
        org = repository.get_organisation(db, data["organisation_id"])
        user = slack_client.get_user(data["user_id"])
        is_admin = bool(user.get("is_admin"))

        conv = repository.find_conversation_by_channel(db, org.id, thread_ts)
        if conv is None:
            if is_admin:
                log.info("admin message outside a conversation", {"thread_ts": thread_ts})
                return
            profile = user.get("profile") or {}
            contact = repository.get_or_create_slack_contact(
                db, org.id, user.get("id") or data["user_id"],
                name=user.get("real_name"), email=profile.get("email"), phone=profile.get("phone"),
            )
            conv = repository.create_conversation(
                db, org.id, contact.id, channel=ConversationChannel.SLACK, channel_id=thread_ts,
            )
            created = conv.id

        creator = MessageCreator.USER if is_admin else MessageCreator.CONTACT
        outbound = handle_inbound_message(db, conv.id, str(data.get("message") or ""), creator,
                                          assistant=assistant)
        created = None
        if outbound:
            slack_client.post_bot_message(channel, format_reply(outbound), thread_ts)
    except Exception:
        log.exception("error processing slack message", {"channel": channel, "thread_ts": thread_ts})
        if created:
            db.rollback()
            discard_new_conversation(db, created)
        _apologise(slack_client.post_bot_message, channel, APOLOGY, thread_ts)
    finally:
        db.close()


def process_slash_message(data: dict, *, assistant: Optional[AssistantClient] = None) -> None:
    response_url = str(data.get("response_url") or "")
    created = None
    db = SessionLocal()
    try:
        org = repository.get_organisation(db, data["organisation_id"])
        contact = repository.get_or_create_slack_contact(
            db, org.id, data["user_id"], name=data.get("user_name"),
        )
        conv = repository.find_conversation_by_channel(db, org.id, response_url)
        if conv is None:
            conv = repository.create_conversation(
                db, org.id, contact.id, channel=ConversationChannel.SLACK, channel_id=response_url,
            )
            created = conv.id
        outbound = handle_inbound_message(db, conv.id, str(data.get("message") or ""),
                                          MessageCreator.CONTACT, assistant=assistant)
        created = None
        if outbound:
            slack_client.post_slash_response(response_url, format_reply(outbound))
    except Exception:
        log.exception("error processing slack slash command")
        if created:
            db.rollback()
            discard_new_conversation(db, created)
        _apologise(slack_client.post_slash_response, response_url, APOLOGY)
    finally:
        db.close()
