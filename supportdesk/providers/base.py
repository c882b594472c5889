from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

# Run states the provider may report. Anything in TERMINAL_STATES stops polling.
COMPLETED = "completed"
REQUIRES_ACTION = "requires_action"
FAILURE_STATES = {"failed", "cancelled", "expired", "incomplete"}
TERMINAL_STATES = {COMPLETED, REQUIRES_ACTION} | FAILURE_STATES


@dataclass(frozen=True)
class RunHandle:
    thread_id: str
    run_id: str


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str  # raw JSON text, exactly as the model produced it


@dataclass
class RunState:
    status: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    error: Optional[str] = None


@dataclass(frozen=True)
class ToolOutput:
    tool_call_id: str
    output: str


@dataclass(frozen=True)
class Annotation:
    text: str                  # marker as it appears in the message text
    file_id: Optional[str] = None
    quote: Optional[str] = None
    start_index: Optional[int] = None
    end_index: Optional[int] = None


@dataclass
class ProviderMessage:
    id: str
    role: str                  # "assistant" | "user"
    text: Optional[str]        # None when the message carries no text block
    created_at: int            # seconds since epoch, as providers report it
    annotations: List[Annotation] = field(default_factory=list)


class AssistantBackend(ABC):
    """
    Capability interface over a conversational-AI provider with persistent
    threads and asynchronous runs.
    """

    @abstractmethod
    def create_thread(self) -> str:
        ...

    @abstractmethod
    def submit(self, thread_id: str, assistant_id: str, text: str) -> RunHandle:
        """Append a user message to the thread and start a run."""

    @abstractmethod
    def poll(self, handle: RunHandle) -> RunState:
        ...

    @abstractmethod
    def resolve_tools(self, handle: RunHandle, outputs: Sequence[ToolOutput]) -> RunHandle:
        ...

    @abstractmethod
    def fetch_replies(self, handle: RunHandle, limit: int) -> List[ProviderMessage]:
        """Most recent thread messages, newest first."""

    @abstractmethod
    def create_assistant(self, name: str, instructions: str, tools: list) -> str:
        ...

    @abstractmethod
    def replace_knowledge_base(self, assistant_id: str, documents: Sequence[tuple], tools: list) -> List[str]:
        """
        Drop the assistant's current knowledge files and attach new ones.
        `documents` is a sequence of (filename, bytes). Returns the new file
        ids in the same order; a document that failed to upload yields "".
        """
