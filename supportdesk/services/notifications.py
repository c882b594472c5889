# supportdesk/services/notifications.py
import json
import time
from typing import Any, Dict, List, Optional, Sequence

import requests
from sqlalchemy.orm import Session

from supportdesk import settings
from supportdesk.errors import NotificationFailure, NotFound
from supportdesk.storage import repository
from supportdesk.storage.models import User, now_ms
from supportdesk.util.logger import get_logger

TIMEOUT = (5, 15)  # connect, read
RETRY_STATUSES = (429, 500, 502, 503, 504)
NO_CONTACT_DETAILS = "No contact details provided"

log = get_logger("notifications")


def is_enabled() -> bool:
    return bool(settings.ONESIGNAL_API_KEY and settings.ONESIGNAL_APP_ID)


def _headers() -> Dict[str, str]:
    key = settings.ONESIGNAL_API_KEY
    return {
        "Authorization": key if key.startswith("Key ") else f"Key {key}",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }


def conversation_url(conversation_id: str) -> str:
    return f"{settings.APP_URL}/conversations/{conversation_id}"


def time_ago(ts_ms: Optional[int], now: Optional[int] = None) -> str:
    if not ts_ms:
        return ""
    secs = max(0, ((now if now is not None else now_ms()) - ts_ms) // 1000)
    for unit, size in (("year", 365 * 86400), ("month", 30 * 86400), ("week", 7 * 86400),
                       ("day", 86400), ("hour", 3600), ("minute", 60)):
        if secs >= size:
            n = secs // size
            return f"{n} {unit}{'' if n == 1 else 's'} ago"
    return "just now"


def send_email(emails: Sequence[str], subject: str, template_id: str, custom_data: Dict[str, Any],
               retries: int = 3, sleep=time.sleep) -> Optional[Dict[str, Any]]:
    """
    Template email through OneSignal. Retries 429/5xx and connection errors
    with a linear backoff; raises NotificationFailure when it gives up.
    """
    emails = [e for e in emails if e]
    if not emails:
        log.info("no recipients, email skipped", {"subject": subject})
        return None
    if not is_enabled():
        log.info("DRY RUN email", {"subject": subject, "recipients": len(emails), "template_id": template_id})
        return None

    url = f"{settings.ONESIGNAL_API_BASE}/notifications"
    payload = {
        "app_id": settings.ONESIGNAL_APP_ID,
        "include_email_tokens": emails,
        "target_channel": "email",
        "email_subject": subject,
        "template_id": template_id,
        "custom_data": custom_data,
    }
    last_err = None
    for attempt in range(1, retries + 1):
        status = None
        try:
            r = requests.post(url, headers=_headers(), data=json.dumps(payload, default=str), timeout=TIMEOUT)
            status = r.status_code
            if status in (200, 201, 202):
                data = r.json() if r.content else {}
                log.info("email sent", {"subject": subject, "recipients": len(emails), "id": data.get("id")})
                return data
            last_err = NotificationFailure(f"onesignal returned {status}: {r.text[:200]}")
        except requests.RequestException as e:
            last_err = NotificationFailure(f"onesignal request failed: {e}")
        log.warning("email attempt failed", {"attempt": attempt, "status": status, "error": str(last_err)})
        if (status is None or status in RETRY_STATUSES) and attempt < retries:
            sleep(0.8 * attempt)
            continue
        break
    raise last_err


def _dispatch(emails, subject, template_id, custom_data) -> bool:
    # notifications are best-effort: never raise into the caller
    try:
        send_email(emails, subject, template_id, custom_data)
        return True
    except NotificationFailure:
        log.exception("notification failed", {"subject": subject})
        return False


# ---------- payloads ----------
def daily_summary_data(user_name: str, conversations: List[dict], now: Optional[int] = None) -> dict:
    return {
        "user_name": user_name,
        "total_count": len(conversations),
        "conversations": [
            {
                "id": c["id"],
                "url": conversation_url(c["id"]),
                "name": c["contact"]["name"],
                "email": c["contact"]["email"],
                "phone": c["contact"]["phone"],
                "summary": c["summary"],
                "sentiment": c["sentiment"],
                "message_count": len(c["messages"]),
                "last_message_at": time_ago(c["last_message_at"], now),
            }
            for c in conversations if c.get("messages")
        ],
    }


def super_admin_summary_data(conversations: List[dict], organisations: Sequence, now: Optional[int] = None) -> dict:
    orgs = []
    for org in organisations:
        mine = [c for c in conversations if c["organisation_id"] == org.id]
        if not mine:
            continue
        orgs.append({
            "id": org.id,
            "name": org.name,
            "total_count": len(mine),
            "conversations": [
                {
                    "id": c["id"],
                    "url": conversation_url(c["id"]),
                    "name": c["contact_name"],
                    "summary": c["summary"],
                    "sentiment": c["sentiment"],
                    "last_message_at": time_ago(c["last_message_at"], now),
                }
                for c in mine
            ],
        })
    return {"total_count": len(conversations), "organisations": orgs}


def negative_sentiment_data(conversation: dict, now: Optional[int] = None) -> dict:
    contact = conversation["contact"]
    details = [d for d in (contact.get("email"), contact.get("phone")) if d]
    return {
        "id": conversation["id"],
        "url": conversation_url(conversation["id"]),
        "contact_name": contact.get("name"),
        "contact_contact_details": " and ".join(details) if details else NO_CONTACT_DETAILS,
        "summary": conversation["summary"],
        "sentiment": conversation["sentiment"],
        "message_count": len(conversation["messages"]),
        "last_message_at": time_ago(conversation["last_message_at"], now),
        "messages": [
            {"creator": m["creator"], "message": m["message"]}
            for m in sorted(conversation["messages"], key=lambda m: m["created_at"])
        ],
    }


# ---------- senders ----------
def send_daily_summary(conversations: List[dict], users: Sequence[User]) -> int:
    sent = 0
    for user in [u for u in users if u.email]:
        ok = _dispatch(
            [user.email],
            "Daily Conversations Summary",
            settings.ONESIGNAL_DAILY_SUMMARY_TEMPLATE,
            daily_summary_data(user.name, conversations),
        )
        sent += int(ok)
    log.info("daily summary sent", {"users": sent})
    return sent


def send_daily_summary_to_super_admins(conversations: List[dict], admins: Sequence[User],
                                       organisations: Sequence) -> bool:
    return _dispatch(
        [u.email for u in admins if u.email],
        "Super Admin Daily Conversations Summary",
        settings.ONESIGNAL_SUPER_ADMIN_SUMMARY_TEMPLATE,
        super_admin_summary_data(conversations, organisations),
    )


def send_negative_sentiment_warning(db: Session, organisation_id: str, conversation: dict) -> bool:
    users = repository.users_for_organisation(db, organisation_id)
    name = conversation["contact"].get("name") or "a contact"
    return _dispatch(
        [u.email for u in users if u.email],
        f"Sentiment of conversation with {name} is trending negative",
        settings.ONESIGNAL_NEGATIVE_SENTIMENT_TEMPLATE,
        negative_sentiment_data(conversation),
    )


def run_daily_digest(db: Session, since_ms: int, threshold: Optional[float] = None) -> dict:
    """Summaries for every organisation, one for super admins, warnings for sour conversations."""
    threshold = settings.NEGATIVE_SENTIMENT_THRESHOLD if threshold is None else threshold
    organisations = repository.all_organisations(db)
    everything: List[dict] = []
    warnings = 0
    for org in organisations:
        summaries = repository.list_conversations(db, org.id, since_ms=since_ms)
        everything += summaries
        full = []
        for s in summaries:
            try:
                full.append(repository.get_full_conversation(db, s["id"]))
            except NotFound:
                continue
        send_daily_summary(full, repository.users_for_organisation(db, org.id))
        for c in full:
            if c["messages"] and (c["sentiment"] or 0) < threshold:
                warnings += int(send_negative_sentiment_warning(db, org.id, c))

    send_daily_summary_to_super_admins(everything, repository.super_admins(db), organisations)
    return {"organisations": len(organisations), "conversations": len(everything), "warnings": warnings}
