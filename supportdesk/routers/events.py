# supportdesk/routers/events.py
from fastapi import APIRouter, BackgroundTasks, Body

from supportdesk.services.slack_events import process_event
from supportdesk.util.logger import get_logger

log = get_logger("routers.events")
router = APIRouter()


@router.post("/events", status_code=202)
def receive_events(background: BackgroundTasks, payload=Body(...)):
    """
    Event envelope(s): {"eventType": "Message.SlackBot", "data": {...}} or a list
    of them. Processing happens after the response; failures are reported to
    the originating Slack channel, never to the event source.
    """
    events = payload if isinstance(payload, list) else [payload]
    accepted = 0
    for ev in events:
        if not isinstance(ev, dict) or not ev.get("eventType"):
            log.warning("malformed event skipped", {"event": str(ev)[:200]})
            continue
        background.add_task(process_event, ev)
        accepted += 1
    return {"ok": True, "accepted": accepted}
