# supportdesk/main.py
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from supportdesk import settings
from supportdesk.storage.db import init_db
from supportdesk.senders import slack_client
from supportdesk.services import notifications
from supportdesk.util.logger import get_logger

# Routers
from supportdesk.routers.chat import router as chat_router
from supportdesk.routers.events import router as events_router
from supportdesk.routers.admin import router as admin_router


# -----------------------------------------------------------------------------
# App + DB
# -----------------------------------------------------------------------------
app = FastAPI(title="Support Desk")

logger = get_logger("supportdesk")


@app.on_event("startup")
def _startup():
    init_db()
    logger.info("startup", {
        "db": settings.DATABASE_URL.split("://", 1)[0],
        "slack": slack_client.is_enabled(),
        "email": notifications.is_enabled(),
        "openai": bool(settings.OPENAI_API_KEY),
    })


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------
@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.head("/healthz")
def healthz_head():
    return JSONResponse({})


# Routers (admin last: its /{org_id}/... paths are the most generic)
app.include_router(chat_router)
app.include_router(events_router)
app.include_router(admin_router)
