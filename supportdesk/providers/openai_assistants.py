from typing import List, Optional, Sequence

from openai import OpenAI, OpenAIError

from supportdesk import settings
from supportdesk.providers.base import (
    AssistantBackend, RunHandle, RunState, ToolCall, ToolOutput, ProviderMessage, Annotation,
)
from supportdesk.util.logger import get_logger

log = get_logger("providers.openai")

# --------------------------------------------------------------------
# Shared client: built once per process, reused for connection pooling.
# Transient API errors are retried by the SDK (max_retries).
# --------------------------------------------------------------------
_CLIENT_SINGLETON: Optional[OpenAI] = None


def _client() -> OpenAI:
    global _CLIENT_SINGLETON
    if _CLIENT_SINGLETON is None:
        _CLIENT_SINGLETON = OpenAI(
            api_key=settings.OPENAI_API_KEY,
            timeout=settings.OPENAI_TIMEOUT,
            max_retries=settings.OPENAI_MAX_RETRIES,
        )
        log.info("openai client initialized", {"timeout": settings.OPENAI_TIMEOUT,
                                                "max_retries": settings.OPENAI_MAX_RETRIES})
    return _CLIENT_SINGLETON


def _annotation(a) -> Annotation:
    citation = getattr(a, "file_citation", None) or getattr(a, "file_path", None)
    return Annotation(
        text=getattr(a, "text", "") or "",
        file_id=getattr(citation, "file_id", None) if citation else None,
        quote=getattr(citation, "quote", None) if citation else None,
        start_index=getattr(a, "start_index", None),
        end_index=getattr(a, "end_index", None),
    )


def _to_provider_message(m) -> ProviderMessage:
    text = None
    annotations: List[Annotation] = []
    for block in m.content or []:
        if block.type != "text":
            continue
        text = block.text.value if text is None else f"{text}\n{block.text.value}"
        annotations += [_annotation(a) for a in (block.text.annotations or [])]
    return ProviderMessage(id=m.id, role=m.role, text=text, created_at=m.created_at, annotations=annotations)


class OpenAIAssistantBackend(AssistantBackend):
    """
    Assistants API (threads + runs). Each conversation owns one thread; the
    organisation owns the assistant.
    """

    def __init__(self, client: Optional[OpenAI] = None, model: str = ""):
        self._explicit = client
        self.model = model or settings.OPENAI_MODEL

    @property
    def client(self) -> OpenAI:
        return self._explicit or _client()

    # ---------- conversation ----------
    def create_thread(self) -> str:
        return self.client.beta.threads.create().id

    def submit(self, thread_id: str, assistant_id: str, text: str) -> RunHandle:
        self.client.beta.threads.messages.create(thread_id, role="user", content=text)
        run = self.client.beta.threads.runs.create(thread_id=thread_id, assistant_id=assistant_id)
        return RunHandle(thread_id=thread_id, run_id=run.id)

    def poll(self, handle: RunHandle) -> RunState:
        run = self.client.beta.threads.runs.retrieve(handle.run_id, thread_id=handle.thread_id)
        calls = []
        action = getattr(run, "required_action", None)
        if action is not None and action.submit_tool_outputs is not None:
            calls = [
                ToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments or "")
                for tc in action.submit_tool_outputs.tool_calls
            ]
        err = getattr(run, "last_error", None)
        return RunState(status=run.status, tool_calls=calls, error=(err.message if err else None))

    def resolve_tools(self, handle: RunHandle, outputs: Sequence[ToolOutput]) -> RunHandle:
        run = self.client.beta.threads.runs.submit_tool_outputs(
            handle.run_id,
            thread_id=handle.thread_id,
            tool_outputs=[{"tool_call_id": o.tool_call_id, "output": o.output} for o in outputs],
        )
        return RunHandle(thread_id=handle.thread_id, run_id=run.id)

    def fetch_replies(self, handle: RunHandle, limit: int) -> List[ProviderMessage]:
        page = self.client.beta.threads.messages.list(handle.thread_id, order="desc", limit=limit)
        return [_to_provider_message(m) for m in page.data]

    # ---------- assistant management ----------
    def create_assistant(self, name: str, instructions: str, tools: list) -> str:
        a = self.client.beta.assistants.create(name=name, instructions=instructions, model=self.model, tools=tools)
        log.info("assistant created", {"assistant_id": a.id, "name": name})
        return a.id

    def _drop_vector_stores(self, assistant_id: str) -> None:
        assistant = self.client.beta.assistants.retrieve(assistant_id)
        if not any(t.type == "file_search" for t in (assistant.tools or [])):
            return
        resources = getattr(assistant, "tool_resources", None)
        file_search = getattr(resources, "file_search", None) if resources else None
        for vs_id in (getattr(file_search, "vector_store_ids", None) or []):
            files = self.client.vector_stores.files.list(vs_id, limit=100)
            for f in files.data:
                self.client.files.delete(f.id)
            self.client.vector_stores.delete(vs_id)
            log.info("vector store removed", {"assistant_id": assistant_id, "vector_store_id": vs_id})

    def replace_knowledge_base(self, assistant_id: str, documents: Sequence[tuple], tools: list) -> List[str]:
        self._drop_vector_stores(assistant_id)

        file_ids = []
        for filename, data in documents:
            try:
                f = self.client.files.create(file=(filename, data), purpose="assistants")
                file_ids.append(f.id)
            except OpenAIError as e:
                # carry on with the others
                log.warning("knowledge file upload failed", {"file": filename, "error": str(e)})
                file_ids.append("")

        vs = self.client.vector_stores.create(
            name=f"vs_for_{assistant_id}",
            file_ids=[f for f in file_ids if f],
        )
        self.client.beta.assistants.update(
            assistant_id,
            tools=tools,
            tool_resources={"file_search": {"vector_store_ids": [vs.id]}},
        )
        log.info("knowledge base replaced", {"assistant_id": assistant_id, "files": len([f for f in file_ids if f])})
        return file_ids
