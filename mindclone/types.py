"""
Data types for the memory journal.
"""

import base64
import re
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional


class MemoryType(str, Enum):
    """Kind of captured content. Fixed at creation."""
    TEXT = "text"
    IMAGE = "image"
    LINK = "link"


class ProcessingKind(str, Enum):
    """Asynchronous AI operations that can be outstanding on a memory."""
    SUMMARY = "summary"
    AI = "ai"


class AiAction(str, Enum):
    """Actions offered on a single memory."""
    REWRITE = "rewrite"
    TRANSLATE = "translate"
    EXTRACT = "extract"
    IDEAS = "ideas"
    STORY = "story"
    SMART_SUMMARY = "smart_summary"
    CONTINUE_WRITING = "continue_writing"
    ANALYZE_IMAGE = "analyze_image"
    PLAN_TRIP = "plan_trip"
    FIND_RELATED = "find_related"


# Fields the store and repository accept in a partial update
MUTABLE_FIELDS = frozenset({
    "content", "description", "smart_summary", "tags", "related_memory_ids",
})

# Fields that never change after creation
IMMUTABLE_FIELDS = frozenset({"id", "type", "created_at"})


# ---------------------------------------------------------------------------
# Identifiers and tags
# ---------------------------------------------------------------------------

ID_PREFIX = "mem_"

_id_lock = threading.Lock()
_last_id_ms = 0


def now_ms() -> int:
    """Current time as integer milliseconds since the epoch."""
    return int(time.time() * 1000)


def new_memory_id(created_at: Optional[int] = None) -> str:
    """Generate a memory id from the creation timestamp.

    Ids are ``mem_<ms>``. Two ids requested in the same millisecond get
    consecutive numbers, so ids from one process never collide.
    """
    global _last_id_ms
    ms = created_at if created_at is not None else now_ms()
    with _id_lock:
        if ms <= _last_id_ms:
            ms = _last_id_ms + 1
        _last_id_ms = ms
    return f"{ID_PREFIX}{ms}"


def normalize_tag(tag: str) -> str:
    """Canonical tag form: stripped and lowercased."""
    return tag.strip().lower()


def normalize_tags(tags) -> list[str]:
    """Normalize and de-duplicate tags, keeping first-seen order."""
    result: list[str] = []
    seen: set[str] = set()
    for tag in tags or []:
        if not isinstance(tag, str):
            continue
        norm = normalize_tag(tag)
        if norm and norm not in seen:
            seen.add(norm)
            result.append(norm)
    return result


def parse_tag_list(text: str) -> list[str]:
    """Parse a comma-separated tag string as typed by a user."""
    return normalize_tags(text.split(","))


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

_DATA_URL_RE = re.compile(r"^data:(.+?);base64,(.+)$", re.DOTALL)


@dataclass(frozen=True)
class ImageData:
    """Raw image bytes with their declared media type."""
    mime_type: str
    data: bytes

    @classmethod
    def from_data_url(cls, data_url: str) -> "ImageData":
        """Parse a ``data:<mime>;base64,<payload>`` string."""
        match = _DATA_URL_RE.match(data_url)
        if not match:
            raise ValueError("Invalid data URL")
        return cls(mime_type=match.group(1), data=base64.b64decode(match.group(2)))

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SmartSummary:
    """AI-generated structured summary of a text or link memory."""
    title: str
    summary: str
    key_points: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "summary": self.summary,
            "keyPoints": list(self.key_points),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SmartSummary":
        key_points = data.get("keyPoints", data.get("key_points", []))
        return cls(
            title=str(data.get("title", "")),
            summary=str(data.get("summary", "")),
            key_points=[str(p) for p in key_points or []],
        )


@dataclass
class Memory:
    """
    One captured unit of content plus AI-derived metadata.

    ``pending`` is transient: it lists the AI operations currently
    outstanding for this memory and is never persisted.
    """
    id: str
    type: MemoryType
    content: str
    created_at: int
    description: Optional[str] = None
    smart_summary: Optional[SmartSummary] = None
    tags: list[str] = field(default_factory=list)
    related_memory_ids: Optional[list[str]] = None
    pending: frozenset = frozenset()

    @property
    def is_processing_summary(self) -> bool:
        return ProcessingKind.SUMMARY in self.pending

    @property
    def is_processing_ai(self) -> bool:
        return ProcessingKind.AI in self.pending

    @property
    def searchable_text(self) -> Optional[str]:
        """Text that stands in for the content: description for images."""
        if self.type == MemoryType.IMAGE:
            return self.description
        return self.content

    def with_pending(self, pending) -> "Memory":
        return replace(self, pending=frozenset(pending))

    def to_dict(self) -> dict[str, Any]:
        """JSON-compatible form, keyed the way exports are written."""
        d: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "content": self.content,
            "createdAt": self.created_at,
            "tags": list(self.tags),
        }
        if self.description is not None:
            d["description"] = self.description
        if self.smart_summary is not None:
            d["smartSummary"] = self.smart_summary.to_dict()
        if self.related_memory_ids is not None:
            d["relatedMemoryIds"] = list(self.related_memory_ids)
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Memory":
        summary = data.get("smartSummary")
        related = data.get("relatedMemoryIds")
        memory_id = str(data["id"])
        return cls(
            id=memory_id,
            type=MemoryType(data["type"]),
            content=str(data.get("content", "")),
            created_at=int(data["createdAt"]),
            description=data.get("description"),
            smart_summary=SmartSummary.from_dict(summary) if summary else None,
            tags=normalize_tags(data.get("tags")),
            related_memory_ids=(
                [r for r in related if r != memory_id] if related is not None else None
            ),
        )


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GroundingSource:
    """A web page the model consulted while answering."""
    uri: str
    title: str


@dataclass
class ChatMessage:
    sender: str  # "user" or "ai"
    text: str
    is_savable: bool = False
    sources: list[GroundingSource] = field(default_factory=list)


@dataclass
class QueryResult:
    """Answer to a question asked across the whole collection."""
    text: str
    memory_ids: list[str] = field(default_factory=list)
    sources: list[GroundingSource] = field(default_factory=list)
