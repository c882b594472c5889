# supportdesk/routers/admin.py
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from supportdesk.errors import NotFound, ValidationFailure
from supportdesk.services.organisations import onboard_organisation
from supportdesk.storage import repository
from supportdesk.storage.db import SessionLocal
from supportdesk.util.auth import AuthenticationError, authenticate_request
from supportdesk.util.logger import get_logger

log = get_logger("routers.admin")
router = APIRouter()


def _authorize(db, request: Request, organisation_id: str = "", super_admin_only: bool = False):
    """None when allowed, otherwise the 401/403 response to return."""
    try:
        email = authenticate_request(request)
    except AuthenticationError as e:
        log.info("unauthenticated", {"path": request.url.path, "reason": str(e)})
        return Response(status_code=401)
    if not repository.is_admin(db, email, organisation_id, super_admin_only=super_admin_only):
        log.info("forbidden", {"path": request.url.path, "email": email})
        return Response(status_code=403)
    return None


@router.post("/organisations")
def create_organisation(request: Request, payload: dict):
    db = SessionLocal()
    try:
        denied = _authorize(db, request, super_admin_only=True)
        if denied:
            return denied
        try:
            org = onboard_organisation(db, payload)
        except ValidationFailure as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except Exception:
            log.exception("can't create organisation", {"name": payload.get("name")})
            return JSONResponse({"error": "Can't create organisation"}, status_code=500)
        return repository.organisation_to_dict(org)
    finally:
        db.close()


@router.get("/{org_id}/conversations")
def get_conversations(org_id: str, request: Request):
    if not org_id.strip():
        return JSONResponse({"error": "Must supply a valid organisation ID"}, status_code=400)
    db = SessionLocal()
    try:
        denied = _authorize(db, request, org_id)
        if denied:
            return denied
        return repository.list_conversations(db, org_id)
    finally:
        db.close()


@router.get("/{org_id}/conversations/{conversation_id}")
def get_conversation(org_id: str, conversation_id: str, request: Request):
    db = SessionLocal()
    try:
        denied = _authorize(db, request, org_id)
        if denied:
            return denied
        try:
            conv = repository.get_full_conversation(db, conversation_id)
        except NotFound:
            return JSONResponse({"error": "Can't find conversation"}, status_code=404)
        if conv["organisation_id"] != org_id:
            return JSONResponse({"error": "Can't find conversation"}, status_code=404)
        return conv
    finally:
        db.close()
