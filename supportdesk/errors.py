class SupportDeskError(Exception):
    """Base for errors the adapters know how to map."""


class NotFound(SupportDeskError):
    def __init__(self, kind: str, ident: str):
        super().__init__(f"{kind} not found: {ident}")
        self.kind = kind
        self.ident = ident


class AssistantFailure(SupportDeskError):
    """The assistant run ended in a non-completed state (or never ended)."""

    def __init__(self, status: str, detail: str = ""):
        super().__init__(f"assistant run ended with status={status}" + (f": {detail}" if detail else ""))
        self.status = status
        self.detail = detail


class ValidationFailure(SupportDeskError):
    pass


class NotificationFailure(SupportDeskError):
    pass
