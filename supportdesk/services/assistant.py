# supportdesk/services/assistant.py
import json
import re
import time
from dataclasses import dataclass, field, asdict
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from supportdesk import settings
from supportdesk.errors import AssistantFailure, SupportDeskError, ValidationFailure
from supportdesk.providers.base import (
    AssistantBackend, RunHandle, RunState, ToolCall, ToolOutput, ProviderMessage,
    COMPLETED, REQUIRES_ACTION, TERMINAL_STATES,
)
from supportdesk.storage import repository
from supportdesk.util.logger import get_logger

log = get_logger("assistant")

# ==== Tools exposed to the assistant ====
SAVE_CONTACT_DETAILS = "save_contact_details"

SAVE_CONTACT_DETAILS_TOOL = {
    "type": "function",
    "function": {
        "name": SAVE_CONTACT_DETAILS,
        "description": "Save contact details of user to database",
        "parameters": {
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "The user's name"},
                "email": {"type": "string", "description": "The user's email"},
                "phone": {"type": "string", "description": "The user's phone number"},
            },
            "required": [],
        },
    },
}
FILE_SEARCH_TOOL = {"type": "file_search"}

CANT_PARSE_DETAILS = "Can't parse details"
TOOL_FAILED = "Tool call failed"
GENERIC_TOOL_ACK = json.dumps({"success": "true"})


def tool_model(has_files: bool) -> list:
    return [FILE_SEARCH_TOOL, SAVE_CONTACT_DETAILS_TOOL] if has_files else [SAVE_CONTACT_DETAILS_TOOL]


def assistant_instructions(organisation_name: str) -> str:
    return (
        f"You are a customer support agent for {organisation_name}. Please answer concisely and nicely to "
        "potential customers, if you don't know the answer or the question is sensitive, please ask them to "
        "provide a phone number for a call back by an expert within 2 business days."
    )


def assistant_name(organisation_name: str) -> str:
    return "support-" + "-".join((organisation_name or "").strip().split()).lower()


# ==== Citations ====
# Assistants API file_search markers look like 【4:0†source】
_CITATION_MARKER_RE = re.compile(r"【[^【】]*†[^【】]*】")


def strip_citations(text: str, markers: Sequence[str] = ()) -> str:
    """
    Remove citation markers from reply text. Runs to a fixpoint, so stripping
    already-stripped text is a no-op.
    """
    s = text or ""
    while True:
        prev = s
        for mk in markers:
            if mk:
                s = s.replace(mk, "")
        s = _CITATION_MARKER_RE.sub("", s)
        if s == prev:
            return s


@dataclass
class Citation:
    marker: str
    quote: Optional[str] = None
    file_id: Optional[str] = None
    url: Optional[str] = None


@dataclass
class AssistantReply:
    text: str
    created_at: int  # ms, as reported by the provider
    citations: List[Citation] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


# ==== Tool handlers ====
def _parse_contact_details(arguments: str) -> dict:
    try:
        details = json.loads(arguments or "")
    except ValueError as e:
        raise ValidationFailure(f"tool arguments are not JSON: {e}")
    if not isinstance(details, dict):
        raise ValidationFailure("tool arguments must be a JSON object")
    picked = {k: details[k] for k in repository.CONTACT_DETAIL_FIELDS if k in details}
    for k, v in picked.items():
        if v is not None and not isinstance(v, str):
            raise ValidationFailure(f"{k} must be a string, got {type(v).__name__}")
    return picked


def save_contact_details(db: Session, contact_id: str, arguments: str) -> str:
    try:
        details = _parse_contact_details(arguments)
    except ValidationFailure as e:
        log.warning("save_contact_details: bad payload", {"contact_id": contact_id, "error": str(e)})
        return CANT_PARSE_DETAILS
    saved = repository.update_contact_details(db, contact_id, details)
    return json.dumps(saved, separators=(",", ":"), ensure_ascii=False)


ToolHandler = Callable[[Session, str, str], str]

TOOL_HANDLERS: Dict[str, ToolHandler] = {
    SAVE_CONTACT_DETAILS: save_contact_details,
}


# ==== Client ====
class AssistantClient:
    """
    Drives one assistant invocation to completion: submit, poll, resolve at
    most one round of tool calls, collect the replies.
    """

    def __init__(
        self,
        backend: AssistantBackend,
        *,
        poll_interval: float = None,
        timeout: float = None,
        reply_window: int = None,
        handlers: Optional[Dict[str, ToolHandler]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self.poll_interval = settings.ASSISTANT_POLL_INTERVAL if poll_interval is None else poll_interval
        self.timeout = settings.ASSISTANT_RUN_TIMEOUT if timeout is None else timeout
        self.reply_window = settings.ASSISTANT_REPLY_WINDOW if reply_window is None else reply_window
        self.handlers = TOOL_HANDLERS if handlers is None else handlers
        self.sleep = sleep
        self.clock = clock

    def run(self, db: Session, thread_id: str, assistant_id: str, contact_id: str, text: str) -> List[AssistantReply]:
        if not assistant_id:
            raise AssistantFailure("not_configured", "organisation has no assistant")

        handle = self.backend.submit(thread_id, assistant_id, text)
        log.info("assistant run started", {"thread_id": thread_id, "run_id": handle.run_id})
        state = self._wait(handle)

        if state.status == REQUIRES_ACTION:
            if not state.tool_calls:
                raise AssistantFailure(REQUIRES_ACTION, "no tool calls in required action")
            log.info("function call detected", {"run_id": handle.run_id,
                                                "tools": [tc.name for tc in state.tool_calls]})
            outputs = self._resolve_tool_calls(db, contact_id, state.tool_calls)
            handle = self.backend.resolve_tools(handle, outputs)
            state = self._wait(handle)
            # only one round of tool calls is supported

        if state.status != COMPLETED:
            log.error("assistant run failed", {"run_id": handle.run_id, "status": state.status,
                                               "error": state.error})
            raise AssistantFailure(state.status, state.error or "")

        return self._collect_replies(db, handle)

    def _wait(self, handle: RunHandle) -> RunState:
        deadline = self.clock() + self.timeout
        while True:
            state = self.backend.poll(handle)
            if state.status in TERMINAL_STATES:
                return state
            if self.clock() >= deadline:
                raise AssistantFailure("timeout", f"run {handle.run_id} still {state.status}")
            self.sleep(self.poll_interval)

    def _resolve_tool_calls(self, db: Session, contact_id: str, calls: Sequence[ToolCall]) -> List[ToolOutput]:
        # every tool call must get an output or the run stalls
        outputs = []
        for tc in calls:
            handler = self.handlers.get(tc.name)
            if handler is None:
                output = GENERIC_TOOL_ACK
            else:
                try:
                    output = handler(db, contact_id, tc.arguments)
                except (SupportDeskError, SQLAlchemyError) as e:
                    db.rollback()
                    log.warning("tool call failed", {"tool": tc.name, "error": str(e)})
                    output = TOOL_FAILED
            log.info("tool call resolved", {"tool": tc.name, "tool_call_id": tc.id, "output": output})
            outputs.append(ToolOutput(tool_call_id=tc.id, output=output))
        return outputs

    def _collect_replies(self, db: Session, handle: RunHandle) -> List[AssistantReply]:
        recent = self.backend.fetch_replies(handle, self.reply_window)
        window: List[ProviderMessage] = []
        for m in recent:
            if m.role != "assistant":
                break
            window.append(m)
        window.reverse()

        file_ids = [a.file_id for m in window for a in m.annotations if a.file_id]
        urls = repository.file_urls(db, file_ids) if file_ids else {}

        replies = []
        for m in window:
            if m.text is None:
                continue
            citations = [
                Citation(marker=a.text, quote=a.quote, file_id=a.file_id, url=urls.get(a.file_id or ""))
                for a in m.annotations
            ]
            for c in citations:
                if c.quote:
                    log.info("file citation found", {"quote": c.quote, "file_id": c.file_id})
            replies.append(AssistantReply(
                text=strip_citations(m.text, [a.text for a in m.annotations]),
                created_at=int(m.created_at) * 1000,
                citations=citations,
            ))
        return replies


# --------------------------------------------------------------------
# One shared backend per process (lazily built; env is read once)
# --------------------------------------------------------------------
_BACKEND_SINGLETON: Optional[AssistantBackend] = None


def get_backend() -> AssistantBackend:
    global _BACKEND_SINGLETON
    if _BACKEND_SINGLETON is None:
        from supportdesk.providers.openai_assistants import OpenAIAssistantBackend
        _BACKEND_SINGLETON = OpenAIAssistantBackend()
    return _BACKEND_SINGLETON


def default_client() -> AssistantClient:
    return AssistantClient(get_backend())
