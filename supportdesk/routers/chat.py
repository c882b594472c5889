# supportdesk/routers/chat.py
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from supportdesk.errors import AssistantFailure, NotFound, ValidationFailure
from supportdesk.services.orchestrator import handle_first_contact, handle_inbound_message
from supportdesk.storage.db import SessionLocal
from supportdesk.storage.models import MessageCreator
from supportdesk.util.logger import get_logger

log = get_logger("routers.chat")
router = APIRouter()

FAILED_TO_SEND = {"error": "Failed to send message"}


def _error(status: int, msg: str) -> JSONResponse:
    return JSONResponse({"error": msg}, status_code=status)


@router.post("/chat")
def chat(payload: dict):
    """
    payload: {"conversation_id": "conv_...", "message": "...", "creator": "CONTACT"|"USER"}
    First contact: {"organisation_id": "org_...", "message": "...", "contact": {...}} without
    conversation_id starts a web conversation and returns it along with the replies.
    """
    message = payload.get("message")
    if not isinstance(message, str) or not message.strip():
        return _error(400, "Missing message")
    conversation_id = payload.get("conversation_id")
    organisation_id = payload.get("organisation_id")
    if not conversation_id and not organisation_id:
        return _error(400, "Missing conversation_id")
    contact = payload.get("contact")
    if contact is not None and not isinstance(contact, dict):
        return _error(400, "contact must be an object")
    creator = payload.get("creator") or MessageCreator.CONTACT.value
    where = {"conversation_id": conversation_id} if conversation_id else {"organisation_id": organisation_id}

    db = SessionLocal()
    try:
        if conversation_id:
            log.info("processing message", {"conversation_id": conversation_id})
            outbound = handle_inbound_message(db, conversation_id, message, creator)
            return [m.to_dict() for m in outbound]

        log.info("processing first message", {"organisation_id": organisation_id})
        conv, outbound = handle_first_contact(db, organisation_id, message, creator, contact)
        return {"conversation_id": conv.id, "messages": [m.to_dict() for m in outbound]}
    except ValidationFailure as e:
        return _error(400, str(e))
    except NotFound as e:
        log.info("not found", {"kind": e.kind, "id": e.ident})
        return _error(404, f"{e.kind.capitalize()} not found")
    except AssistantFailure as e:
        log.error("assistant failure", {**where, "status": e.status, "detail": e.detail})
        return JSONResponse(FAILED_TO_SEND, status_code=500)
    except Exception:
        log.exception("error sending message", where)
        return JSONResponse(FAILED_TO_SEND, status_code=500)
    finally:
        db.close()
