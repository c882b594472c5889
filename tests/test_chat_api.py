import pytest
from fastapi.testclient import TestClient

from supportdesk.main import app
from supportdesk.services import orchestrator
from supportdesk.storage.models import Conversation, Contact, Message

from fakes import assistant_msg, user_msg


@pytest.fixture
def client(monkeypatch, assistant):
    monkeypatch.setattr(orchestrator, "default_client", lambda: assistant)
    return TestClient(app)


def test_healthz(client):
    assert client.get("/healthz").json() == {"ok": True}


def test_message_returns_agent_replies(client, db, conversation, backend):
    backend.replies = [assistant_msg("Hello!"), user_msg("hi")]

    r = client.post("/chat", json={"conversation_id": "conv_1", "message": "hi"})

    assert r.status_code == 200
    [m] = r.json()
    assert (m["message"], m["creator"], m["conversation_id"]) == ("Hello!", "AGENT", "conv_1")
    assert m["citations"] == []
    db.expire_all()
    stored = db.query(Message).filter(Message.conversation_id == "conv_1").all()
    assert sorted(x.creator for x in stored) == ["AGENT", "CONTACT"]


def test_operator_message_returns_empty_list(client, db, conversation, backend):
    r = client.post("/chat", json={"conversation_id": "conv_1", "message": "on it", "creator": "USER"})

    assert r.status_code == 200
    assert r.json() == []
    assert backend.submitted == []
    db.expire_all()
    assert db.get(Conversation, "conv_1").interrupted is True


def test_unknown_conversation_is_404(client, org):
    r = client.post("/chat", json={"conversation_id": "conv_nope", "message": "hi"})
    assert r.status_code == 404
    assert r.json() == {"error": "Conversation not found"}


@pytest.mark.parametrize("body,error", [
    ({"conversation_id": "conv_1"}, "Missing message"),
    ({"conversation_id": "conv_1", "message": "   "}, "Missing message"),
    ({"message": "hi"}, "Missing conversation_id"),
    ({"organisation_id": "org_1", "message": "hi", "contact": "Jo"}, "contact must be an object"),
])
def test_bad_requests(client, conversation, body, error):
    r = client.post("/chat", json=body)
    assert r.status_code == 400
    assert r.json() == {"error": error}


def test_agent_creator_rejected(client, conversation, backend):
    r = client.post("/chat", json={"conversation_id": "conv_1", "message": "hi", "creator": "AGENT"})
    assert r.status_code == 400
    assert backend.submitted == []


def test_assistant_failure_is_generic_500(client, db, conversation, backend):
    backend.states = ["failed"]

    r = client.post("/chat", json={"conversation_id": "conv_1", "message": "hi"})

    assert r.status_code == 500
    assert r.json() == {"error": "Failed to send message"}
    assert "boom" not in r.text
    db.expire_all()
    assert db.query(Message).count() == 0


def test_unexpected_error_is_generic_500(client, conversation, monkeypatch):
    def explode(*a, **kw):
        raise RuntimeError("db on fire")

    monkeypatch.setattr("supportdesk.routers.chat.handle_inbound_message", explode)
    r = client.post("/chat", json={"conversation_id": "conv_1", "message": "hi"})
    assert r.status_code == 500
    assert r.json() == {"error": "Failed to send message"}


def test_first_contact_starts_conversation(client, db, org, backend):
    backend.replies = [assistant_msg("Welcome to Acme!")]

    r = client.post("/chat", json={
        "organisation_id": "org_1", "message": "hello", "contact": {"name": "Sam", "email": "sam@x.test"},
    })

    assert r.status_code == 200
    body = r.json()
    assert body["conversation_id"].startswith("conv_")
    assert [m["message"] for m in body["messages"]] == ["Welcome to Acme!"]
    db.expire_all()
    conv = db.get(Conversation, body["conversation_id"])
    assert conv.thread_id == "thread_1"
    assert db.get(Contact, conv.contact_id).name == "Sam"


def test_first_contact_unknown_organisation(client, org):
    r = client.post("/chat", json={"organisation_id": "org_nope", "message": "hello"})
    assert r.status_code == 404
    assert r.json() == {"error": "Organisation not found"}


def test_failed_first_contact_leaves_no_rows(client, db, org, backend):
    backend.states = ["failed"]

    for _ in range(2):
        r = client.post("/chat", json={"organisation_id": "org_1", "message": "hi"})
        assert r.status_code == 500
        assert r.json() == {"error": "Failed to send message"}

    db.expire_all()
    assert db.query(Conversation).count() == 0
    assert db.query(Contact).count() == 0
    assert db.query(Message).count() == 0
