import json

import pytest
from sqlalchemy.exc import OperationalError

from supportdesk.errors import AssistantFailure
from supportdesk.providers.base import ToolCall
from supportdesk.services.assistant import (
    AssistantClient, strip_citations, CANT_PARSE_DETAILS, GENERIC_TOOL_ACK, TOOL_FAILED, assistant_name,
)
from supportdesk.storage.models import Contact, OrganisationFile

from fakes import FakeBackend, assistant_msg, user_msg, citation


def _client(backend, **kw):
    kw.setdefault("poll_interval", 0)
    kw.setdefault("timeout", 30)
    kw.setdefault("reply_window", 5)
    return AssistantClient(backend, sleep=lambda s: None, **kw)


def test_polls_until_completed(db, contact):
    backend = FakeBackend(states=["queued", "in_progress", "in_progress", "completed"],
                          replies=[assistant_msg("Hello!"), user_msg("hi")])
    replies = _client(backend).run(db, "thread_1", "asst_1", contact.id, "hi")

    assert backend.submitted == [("thread_1", "asst_1", "hi")]
    assert backend.polls == 4
    assert [r.text for r in replies] == ["Hello!"]
    assert replies[0].created_at == 1_700_000_000 * 1000


def test_sleeps_fixed_interval_between_polls(db, contact):
    slept = []
    backend = FakeBackend(states=["queued", "in_progress", "completed"], replies=[assistant_msg("ok")])
    client = AssistantClient(backend, poll_interval=1.0, timeout=30, sleep=slept.append)
    client.run(db, "thread_1", "asst_1", contact.id, "hi")
    assert slept == [1.0, 1.0]


@pytest.mark.parametrize("status", ["failed", "cancelled", "expired", "incomplete"])
def test_failure_states_raise(db, contact, status):
    backend = FakeBackend(states=["in_progress", status])
    with pytest.raises(AssistantFailure) as e:
        _client(backend).run(db, "thread_1", "asst_1", contact.id, "hi")
    assert e.value.status == status
    assert backend.fetch_limits == []


def test_poll_timeout_is_a_failure(db, contact):
    now = [0.0]

    def fake_sleep(s):
        now[0] += s

    backend = FakeBackend(states=["in_progress"])
    client = AssistantClient(backend, poll_interval=1.0, timeout=5, sleep=fake_sleep, clock=lambda: now[0])
    with pytest.raises(AssistantFailure) as e:
        client.run(db, "thread_1", "asst_1", contact.id, "hi")
    assert e.value.status == "timeout"
    assert backend.polls == 6


def test_missing_assistant_is_a_failure(db, contact):
    backend = FakeBackend()
    with pytest.raises(AssistantFailure):
        _client(backend).run(db, "thread_1", None, contact.id, "hi")
    assert backend.submitted == []


def test_save_contact_details_round_trip(db, contact):
    backend = FakeBackend(
        states=["in_progress", "requires_action"],
        tool_calls=[ToolCall(id="call_1", name="save_contact_details", arguments='{"email":"a@b.com"}')],
        replies=[assistant_msg("Thanks, saved."), user_msg("my email is a@b.com")],
    )
    replies = _client(backend).run(db, "thread_1", "asst_1", contact.id, "my email is a@b.com")

    [outputs] = backend.tool_outputs
    assert [(o.tool_call_id, o.output) for o in outputs] == [("call_1", '{"email":"a@b.com"}')]
    db.expire_all()
    c = db.get(Contact, contact.id)
    assert c.email == "a@b.com"
    assert c.name == "Jo"  # untouched field
    assert [r.text for r in replies] == ["Thanks, saved."]


def test_every_tool_call_gets_one_output(db, contact):
    backend = FakeBackend(
        states=["requires_action"],
        tool_calls=[
            ToolCall(id="call_1", name="save_contact_details", arguments="{not json"),
            ToolCall(id="call_2", name="lookup_order", arguments="{}"),
            ToolCall(id="call_3", name="save_contact_details", arguments='["a list"]'),
            ToolCall(id="call_4", name="save_contact_details", arguments='{"name":"Jo Bloggs","phone":"021"}'),
        ],
        replies=[assistant_msg("done")],
    )
    _client(backend).run(db, "thread_1", "asst_1", contact.id, "hi")

    [outputs] = backend.tool_outputs
    by_id = {o.tool_call_id: o.output for o in outputs}
    assert len(outputs) == 4
    assert by_id["call_1"] == CANT_PARSE_DETAILS
    assert by_id["call_2"] == GENERIC_TOOL_ACK
    assert by_id["call_3"] == CANT_PARSE_DETAILS
    assert json.loads(by_id["call_4"]) == {"name": "Jo Bloggs", "phone": "021"}


def test_second_requires_action_is_a_failure(db, contact):
    backend = FakeBackend(
        states=["requires_action"],
        after_tools=["in_progress", "requires_action"],
        tool_calls=[ToolCall(id="call_1", name="other", arguments="{}")],
    )
    with pytest.raises(AssistantFailure) as e:
        _client(backend).run(db, "thread_1", "asst_1", contact.id, "hi")
    assert e.value.status == "requires_action"
    assert len(backend.tool_outputs) == 1


def test_replies_since_last_user_turn_in_chronological_order(db, contact):
    backend = FakeBackend(replies=[
        assistant_msg("third", created_at=103),
        assistant_msg("second", created_at=102),
        assistant_msg("first", created_at=101),
        user_msg("question", created_at=100),
        assistant_msg("older answer", created_at=99),
    ])
    replies = _client(backend, reply_window=5).run(db, "thread_1", "asst_1", contact.id, "question")
    assert [r.text for r in replies] == ["first", "second", "third"]
    assert backend.fetch_limits == [5]


def test_messages_without_text_are_skipped(db, contact):
    image_only = assistant_msg("x")
    image_only.text = None
    backend = FakeBackend(replies=[assistant_msg("words"), image_only, user_msg("q")])
    replies = _client(backend).run(db, "thread_1", "asst_1", contact.id, "q")
    assert [r.text for r in replies] == ["words"]


def test_citations_stripped_and_resolved_to_urls(db, org, contact):
    db.add(OrganisationFile(id="file_9", organisation_id=org.id, url="https://acme.test/faq", content="..."))
    db.commit()
    text = "We open at 9am【4:0†source】."
    backend = FakeBackend(replies=[
        assistant_msg(text, annotations=[citation("【4:0†source】", "file_9", quote="Open 9-5")]),
        user_msg("when do you open?"),
    ])
    [reply] = _client(backend).run(db, "thread_1", "asst_1", contact.id, "when do you open?")

    assert reply.text == "We open at 9am."
    [c] = reply.citations
    assert (c.marker, c.file_id, c.quote, c.url) == ("【4:0†source】", "file_9", "Open 9-5", "https://acme.test/faq")


def test_strip_citations_is_idempotent():
    raw = "A【1:0†source】 b【12:3†faq.json】 c [1]"
    once = strip_citations(raw, ["[1]"])
    assert once == "A b c "
    assert strip_citations(once, ["[1]"]) == once
    assert strip_citations(once) == once
    assert strip_citations("plain text") == "plain text"


def test_assistant_name_slug():
    assert assistant_name("  Acme  Plumbing Ltd ") == "support-acme-plumbing-ltd"


@pytest.mark.parametrize("arguments", ['{"email":["a@b.com"]}', '{"phone":21}', '{"name":{"first":"Jo"}}'])
def test_wrong_field_types_get_parse_failure_output(db, contact, arguments):
    backend = FakeBackend(
        states=["requires_action"],
        tool_calls=[ToolCall(id="call_1", name="save_contact_details", arguments=arguments)],
        replies=[assistant_msg("Could you repeat that?")],
    )
    replies = _client(backend).run(db, "thread_1", "asst_1", contact.id, "hi")

    assert [(o.tool_call_id, o.output) for o in backend.tool_outputs[0]] == [("call_1", CANT_PARSE_DETAILS)]
    db.expire_all()
    c = db.get(Contact, contact.id)
    assert (c.name, c.email, c.phone) == ("Jo", None, None)
    assert [r.text for r in replies] == ["Could you repeat that?"]


def test_database_error_in_tool_gets_failure_output(db, contact):
    def broken_save(session, contact_id, arguments):
        session.add(Contact(id="cont_half", organisation_id=contact.organisation_id))
        session.flush()
        raise OperationalError("UPDATE contacts", {}, Exception("database is locked"))

    backend = FakeBackend(
        states=["requires_action"],
        tool_calls=[
            ToolCall(id="call_1", name="save_contact_details", arguments='{"email":"a@b.com"}'),
            ToolCall(id="call_2", name="lookup_order", arguments="{}"),
        ],
        replies=[assistant_msg("ok")],
    )
    client = _client(backend, handlers={"save_contact_details": broken_save})
    client.run(db, "thread_1", "asst_1", contact.id, "hi")

    [outputs] = backend.tool_outputs
    assert [(o.tool_call_id, o.output) for o in outputs] == [("call_1", TOOL_FAILED), ("call_2", GENERIC_TOOL_ACK)]
    # session was rolled back and is usable again
    assert db.get(Contact, "cont_half") is None
    assert db.get(Contact, contact.id).name == "Jo"
