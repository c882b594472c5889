import os
import tempfile

# Must be set before anything from supportdesk is imported (settings read env once)
_DB_DIR = tempfile.mkdtemp(prefix="supportdesk-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["AUTH_JWT_SECRET"] = "test-secret"
os.environ["ONESIGNAL_API_KEY"] = ""
os.environ["ONESIGNAL_APP_ID"] = ""
os.environ["SLACK_BOT_TOKEN"] = "xoxb-test"
os.environ["APP_URL"] = "https://app.example.test"

import pytest

from supportdesk.services.assistant import AssistantClient
from supportdesk.storage.db import Base, SessionLocal, engine, init_db
from supportdesk.storage.models import (
    Organisation, User, Contact, Conversation, UserRole, ConversationChannel, now_ms,
)

from fakes import FakeBackend


@pytest.fixture(scope="session", autouse=True)
def _tables():
    init_db()
    yield


@pytest.fixture(autouse=True)
def _clean_tables():
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def db():
    s = SessionLocal()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def org(db):
    o = Organisation(id="org_1", name="Acme Plumbing", assistant_id="asst_1")
    db.add(o)
    db.commit()
    return o


@pytest.fixture
def contact(db, org):
    c = Contact(id="cont_1", organisation_id=org.id, name="Jo")
    db.add(c)
    db.commit()
    return c


@pytest.fixture
def conversation(db, org, contact):
    ts = now_ms()
    conv = Conversation(
        id="conv_1", organisation_id=org.id, contact_id=contact.id, status="OPEN",
        interrupted=False, channel=ConversationChannel.WEB.value, thread_id="thread_existing",
        created_at=ts, last_message_at=ts,
    )
    db.add(conv)
    db.commit()
    return conv


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def assistant(backend):
    return AssistantClient(backend, poll_interval=0, timeout=30, reply_window=5, sleep=lambda s: None)


@pytest.fixture
def admin_user(db, org):
    u = User(id="user_1", organisation_id=org.id, name="Ada", email="ada@acme.test", role=UserRole.ADMIN.value)
    db.add(u)
    db.commit()
    return u


@pytest.fixture
def super_admin(db):
    u = User(id="user_super", organisation_id=None, name="Root", email="root@desk.test",
             role=UserRole.SUPER_ADMIN.value)
    db.add(u)
    db.commit()
    return u


