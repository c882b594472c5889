# supportdesk/services/organisations.py
import json
from typing import Optional

from sqlalchemy.orm import Session

from supportdesk.errors import ValidationFailure
from supportdesk.providers.base import AssistantBackend
from supportdesk.services.assistant import (
    assistant_instructions, assistant_name, get_backend, tool_model,
)
from supportdesk.storage import repository
from supportdesk.storage.models import Organisation
from supportdesk.util.logger import get_logger

log = get_logger("organisations")


def _parse_knowledge_file(filedata: str) -> dict:
    try:
        data = json.loads(filedata)
    except (TypeError, ValueError):
        raise ValidationFailure("File is not a valid JSON")
    if not isinstance(data, dict):
        raise ValidationFailure("File must be a JSON object of {url: text}")
    return data


def update_assistant_files(db: Session, organisation_id: str, assistant_id: str, filedata: str,
                           *, backend: Optional[AssistantBackend] = None) -> int:
    """
    Replace the assistant's knowledge base with the entries of a JSON object
    {source_url: text}. Returns how many entries made it into the new store.
    """
    data = _parse_knowledge_file(filedata)
    backend = backend or get_backend()

    keys = list(data)
    documents = [
        (f"{assistant_id}-{i}.jsonl", json.dumps({"text": data[k]}, ensure_ascii=False).encode("utf-8"))
        for i, k in enumerate(keys)
    ]
    file_ids = backend.replace_knowledge_base(assistant_id, documents, tool_model(True))

    rows = [{"id": fid, "url": k, "content": data[k]} for k, fid in zip(keys, file_ids) if fid]
    repository.replace_organisation_files(db, organisation_id, rows)
    log.info("organisation files replaced", {"organisation_id": organisation_id, "files": len(rows),
                                             "skipped": len(keys) - len(rows)})
    return len(rows)


def onboard_organisation(db: Session, payload: dict, *, backend: Optional[AssistantBackend] = None) -> Organisation:
    name = (payload.get("name") or "").strip()
    if not name:
        raise ValidationFailure("Organisation name is required")

    filedata = payload.get("filedata")
    if filedata:
        # fail before anything is created
        _parse_knowledge_file(filedata)

    fields = {k: payload.get(k) for k in repository.ORGANISATION_FIELDS}
    fields["name"] = name
    if not fields.get("assistant_id"):
        backend = backend or get_backend()
        fields["assistant_id"] = backend.create_assistant(
            assistant_name(name), assistant_instructions(name), tool_model(False),
        )

    log.info("creating organisation", {"name": name})
    org = repository.create_organisation(db, fields)

    if filedata:
        update_assistant_files(db, org.id, org.assistant_id, filedata, backend=backend)
    return org
