"""
Directory data source: read-only enumeration of directory entities, plus
rendering of the retrieval-relevant fields of each entity into text,
metadata and a content hash.
"""

import asyncio
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

from husky.core.errors import PersistenceError
from husky.core.models import SourceType, parse_datetime


@dataclass
class DirectoryEntity:
    """One row of the directory's relational source, flattened."""

    source_type: SourceType
    source_id: str
    fields: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None
    # Set when the source row could not be read; the entity is then reported, not indexed.
    error: Optional[str] = None


class DirectorySource(Protocol):
    async def list_entities(self, source_type: SourceType) -> List[DirectoryEntity]:
        ...


# (field key, label) pairs that matter for retrieval, per entity kind.
# Only these feed the rendered text and the content hash.
RETRIEVAL_FIELDS: Dict[SourceType, List[Tuple[str, str]]] = {
    SourceType.MEMBER: [
        ("name", "Name"),
        ("role", "Role"),
        ("bio", "Bio"),
        ("skills", "Skills"),
        ("location", "Location"),
        ("teams", "Teams"),
        ("projects", "Projects"),
    ],
    SourceType.TEAM: [
        ("name", "Name"),
        ("shortDescription", "Summary"),
        ("longDescription", "Description"),
        ("industryTags", "Industry"),
        ("focusAreas", "Focus areas"),
        ("website", "Website"),
    ],
    SourceType.PROJECT: [
        ("name", "Name"),
        ("tagline", "Tagline"),
        ("description", "Description"),
        ("maintainingTeam", "Maintained by"),
        ("focusAreas", "Focus areas"),
    ],
    SourceType.FOCUS_AREA: [
        ("title", "Title"),
        ("description", "Description"),
        ("parent", "Part of"),
    ],
    SourceType.IRL_EVENT: [
        ("name", "Name"),
        ("description", "Description"),
        ("location", "Location"),
        ("startDate", "Starts"),
        ("endDate", "Ends"),
        ("topics", "Topics"),
    ],
    SourceType.WEB_DOC: [
        ("title", "Title"),
        ("url", "URL"),
        ("content", "Content"),
    ],
}

_NAME_KEYS = ("name", "title")


def _render_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(_render_value(v) for v in value if v not in (None, ""))
    if isinstance(value, dict):
        return str(value.get("name") or value.get("title") or json.dumps(value, sort_keys=True))
    return str(value).strip()


def relevant_fields(entity: DirectoryEntity) -> Dict[str, Any]:
    return {
        key: entity.fields.get(key)
        for key, _ in RETRIEVAL_FIELDS[SourceType(entity.source_type)]
    }


def compute_content_hash(entity: DirectoryEntity) -> str:
    """SHA-256 over the canonical JSON of the retrieval-relevant fields."""
    payload = json.dumps(
        {"sourceType": SourceType(entity.source_type).value, "fields": relevant_fields(entity)},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def render_entity(entity: DirectoryEntity) -> Tuple[str, Dict[str, Any]]:
    """Render an entity into embedding text and ordered display metadata."""
    source_type = SourceType(entity.source_type)
    lines = []
    for key, label in RETRIEVAL_FIELDS[source_type]:
        rendered = _render_value(entity.fields.get(key) or "")
        if rendered:
            lines.append(f"{label}: {rendered}")

    metadata: Dict[str, Any] = {}
    for key in _NAME_KEYS:
        if entity.fields.get(key):
            metadata[key] = _render_value(entity.fields[key])
    if entity.fields.get("url"):
        metadata["url"] = str(entity.fields["url"])
    if entity.updated_at:
        metadata["updated_at"] = entity.updated_at.isoformat()
    return "\n".join(lines), metadata


def entity_from_dict(source_type: SourceType, data: Any) -> DirectoryEntity:
    """Convert one export row. A malformed row comes back with ``error`` set."""
    if not isinstance(data, dict):
        return DirectoryEntity(
            source_type=source_type, source_id="", error=f"row is not an object: {data!r:.80}"
        )
    data = dict(data)
    source_id = str(data.pop("id", data.pop("uid", "")))
    entity = DirectoryEntity(source_type=source_type, source_id=source_id, fields=data)
    raw_updated = data.pop("updatedAt", None)
    try:
        if raw_updated is not None and not isinstance(raw_updated, str):
            raise ValueError("expected an ISO-8601 string")
        entity.updated_at = parse_datetime(raw_updated)
    except ValueError as e:
        entity.error = f"invalid updatedAt {raw_updated!r}: {e}"
    return entity


class JsonDirectorySource:
    """
    Directory export read from a JSON file keyed by source type:
    {"member": [{"id": ..., "updatedAt": ..., "name": ...}, ...], "team": [...]}.
    The file is re-read on every enumeration so exports can be swapped in place.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def _load(self) -> Dict[str, Any]:
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Directory export unavailable at {self.path}: {e}") from e

    async def list_entities(self, source_type: SourceType) -> List[DirectoryEntity]:
        data = await asyncio.to_thread(self._load)
        rows = data.get(SourceType(source_type).value, [])
        return [entity_from_dict(SourceType(source_type), row) for row in rows]


class InMemoryDirectorySource:
    """Directory held in process memory; used for change-event feeds and tests."""

    def __init__(self, entities: Optional[List[DirectoryEntity]] = None):
        self._entities: Dict[SourceType, Dict[str, DirectoryEntity]] = {
            source_type: {} for source_type in SourceType
        }
        for entity in entities or []:
            self.put(entity)

    def put(self, entity: DirectoryEntity) -> None:
        self._entities[SourceType(entity.source_type)][entity.source_id] = entity

    def remove(self, source_type: SourceType, source_id: str) -> None:
        self._entities[SourceType(source_type)].pop(source_id, None)

    async def list_entities(self, source_type: SourceType) -> List[DirectoryEntity]:
        return list(self._entities[SourceType(source_type)].values())
