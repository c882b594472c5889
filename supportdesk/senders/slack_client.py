import json
from typing import Any, Dict

import requests

from supportdesk import settings
from supportdesk.errors import NotificationFailure
from supportdesk.util.logger import get_logger

TIMEOUT = (5, 15)  # connect, read
log = get_logger("senders.slack")


def is_enabled() -> bool:
    return bool(settings.SLACK_BOT_TOKEN)


def _headers(content_type: str = "application/json; charset=utf-8") -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {settings.SLACK_BOT_TOKEN}",
        "Content-Type": content_type,
    }


def _json_or_raw(r: requests.Response) -> Dict[str, Any]:
    try:
        return r.json()
    except ValueError:
        return {"_raw": r.text}


def post_bot_message(channel: str, text: str, thread_ts: str) -> Dict[str, Any]:
    """chat.postMessage into a thread."""
    url = f"{settings.SLACK_API_BASE}/chat.postMessage"
    payload = {"channel": channel, "text": text, "thread_ts": thread_ts}
    try:
        r = requests.post(url, headers=_headers(), data=json.dumps(payload), timeout=TIMEOUT)
    except requests.RequestException as e:
        raise NotificationFailure(f"slack post failed: {e}")
    data = _json_or_raw(r)
    if r.status_code != 200 or not data.get("ok"):
        log.error("slack post failed", {"status": r.status_code, "error": data.get("error")})
        raise NotificationFailure(f"slack post failed: {data.get('error') or r.status_code}")
    log.info("processed slack message", {"channel": channel, "thread_ts": thread_ts})
    return data


def post_slash_response(response_url: str, text: str) -> None:
    """One-shot reply to a slash command via its response_url."""
    payload = {"response_type": "in_channel", "replace_original": True, "text": text}
    try:
        r = requests.post(
            response_url,
            headers={"Content-Type": "application/json; charset=UTF-8"},
            data=json.dumps(payload),
            timeout=TIMEOUT,
        )
    except requests.RequestException as e:
        raise NotificationFailure(f"slack slash response failed: {e}")
    if r.status_code not in (200, 201, 204):
        log.error("slack slash response failed", {"status": r.status_code, "body": r.text[:200]})
        raise NotificationFailure(f"slack slash response failed: {r.status_code}")
    log.info("processed slack slash message")


def get_user(user_id: str) -> Dict[str, Any]:
    """users.info → the `user` object (id, real_name, is_admin, profile{email, phone})."""
    url = f"{settings.SLACK_API_BASE}/users.info"
    try:
        r = requests.post(
            url,
            headers=_headers("application/x-www-form-urlencoded"),
            data={"user": user_id},
            timeout=TIMEOUT,
        )
    except requests.RequestException as e:
        raise NotificationFailure(f"slack users.info failed: {e}")
    data = _json_or_raw(r)
    if not data.get("ok") or not data.get("user"):
        log.error("slack users.info failed", {"user_id": user_id, "error": data.get("error")})
        raise NotificationFailure(f"slack users.info failed: {data.get('error')}")
    return data["user"]
