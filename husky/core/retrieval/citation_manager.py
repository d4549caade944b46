"""
Citation Manager: renders grounding documents with stable citation markers
and resolves the markers an answer actually uses back to document ids.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from husky.core.config import Settings, get_settings
from husky.core.models import RetrievedDocument, SourceType

_MARKER_RE = re.compile(r"\[(\d+(?:\s*,\s*\d+)*)\]")

_PROFILE_PATHS = {
    SourceType.MEMBER: "members",
    SourceType.TEAM: "teams",
    SourceType.PROJECT: "projects",
    SourceType.IRL_EVENT: "events",
}

_SOURCE_LABELS = {
    SourceType.MEMBER: "Member",
    SourceType.TEAM: "Team",
    SourceType.PROJECT: "Project",
    SourceType.FOCUS_AREA: "Focus Area",
    SourceType.IRL_EVENT: "IRL Event",
    SourceType.WEB_DOC: "Web Document",
}


@dataclass
class Citation:
    """Represents a single citation."""

    marker: int
    document_id: str
    source_type: SourceType
    title: str
    snippet: str
    relevance_score: float = 0.0

    def format(self) -> str:
        """Format citation for the prompt context block."""
        label = _SOURCE_LABELS[self.source_type]
        return f"[{self.marker}] {label}: {self.title}\n{self.snippet}"


class CitationManager:
    """
    Manages citations for grounded answers.
    Markers are assigned in retrieval rank order, so the same document list
    always renders the same markers.
    """

    def __init__(self, settings: Optional[Settings] = None, max_snippet_chars: int = 1200):
        self.settings = settings or get_settings()
        self.max_snippet_chars = max_snippet_chars

    def create_citations(self, documents: List[RetrievedDocument]) -> List[Citation]:
        return [
            Citation(
                marker=i,
                document_id=doc.id,
                source_type=doc.document.source_type,
                title=doc.document.title,
                snippet=doc.document.text[: self.max_snippet_chars],
                relevance_score=doc.similarity,
            )
            for i, doc in enumerate(documents, 1)
        ]

    def format_citations_for_prompt(self, citations: List[Citation]) -> str:
        if not citations:
            return ""
        return "\n\n".join(c.format() for c in citations)

    @staticmethod
    def resolve(answer: str, citations: List[Citation]) -> List[str]:
        """
        Return ids of the documents whose markers appear in the answer,
        in order of first use. Unknown markers are ignored.
        """
        by_marker = {c.marker: c.document_id for c in citations}
        used: List[str] = []
        for match in _MARKER_RE.finditer(answer or ""):
            for number in match.group(1).split(","):
                doc_id = by_marker.get(int(number.strip()))
                if doc_id and doc_id not in used:
                    used.append(doc_id)
        return used

    def build_actions(
        self, document_ids: List[str], citations: List[Citation]
    ) -> List[Dict[str, str]]:
        """Directory profile links for the cited documents."""
        by_id = {c.document_id: c for c in citations}
        base = self.settings.directory_base_url.rstrip("/")
        actions = []
        for doc_id in document_ids:
            citation = by_id.get(doc_id)
            if citation is None or citation.source_type not in _PROFILE_PATHS:
                continue
            source_id = doc_id.split(":", 1)[1]
            actions.append(
                {
                    "type": citation.source_type.value,
                    "name": citation.title,
                    "link": f"{base}/{_PROFILE_PATHS[citation.source_type]}/{source_id}",
                }
            )
        return actions
