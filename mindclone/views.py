"""
Derived views over the memory collection.

Everything here is a pure function of a snapshot (and, for timelines, the
current time). Feed filtering, timeline buckets, canvas groups and the
relationship graph are recomputed from scratch on every call.
"""

from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Iterable, Optional, Union

from .types import Memory, MemoryType

TypeFilter = Union[str, MemoryType]

ALL_TYPES = "all"
UNTAGGED = "Untagged"

TODAY = "Today"
YESTERDAY = "Yesterday"
THIS_WEEK = "This Week"
THIS_MONTH = "This Month"

LABEL_LENGTH = 30


# ---------------------------------------------------------------------------
# Feed filtering
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FilterState:
    """
    Manual facets plus the optional AI result set.

    The AI result set and the manual facets are mutually exclusive: changing
    any manual facet drops the AI result set.
    """
    search_term: str = ""
    type_filter: TypeFilter = ALL_TYPES
    tag_filter: Optional[str] = None
    ai_result_ids: Optional[tuple[str, ...]] = None

    @property
    def ai_active(self) -> bool:
        return self.ai_result_ids is not None

    def with_search_term(self, term: str) -> "FilterState":
        return replace(self, search_term=term, ai_result_ids=None)

    def with_type_filter(self, type_filter: TypeFilter) -> "FilterState":
        if type_filter != ALL_TYPES:
            type_filter = MemoryType(type_filter)
        return replace(self, type_filter=type_filter, ai_result_ids=None)

    def with_tag_filter(self, tag: Optional[str]) -> "FilterState":
        return replace(self, tag_filter=tag, ai_result_ids=None)

    def with_ai_results(self, ids: Iterable[str]) -> "FilterState":
        return replace(self, ai_result_ids=tuple(ids))

    def cleared_ai(self) -> "FilterState":
        return replace(self, ai_result_ids=None)


def matches_search(memory: Memory, term: str) -> bool:
    """Case-insensitive substring match over content, tags and summary title."""
    needle = term.strip().lower()
    if not needle:
        return True
    text = (memory.searchable_text or "").lower()
    tags = " ".join(memory.tags or []).lower()
    title = (memory.smart_summary.title if memory.smart_summary else "").lower()
    return needle in text or needle in tags or needle in title


def filter_memories(
    memories: Iterable[Optional[Memory]],
    state: FilterState,
) -> list[Memory]:
    """
    Apply the feed filters in fixed precedence.

    An active AI result set overrides every manual facet. Otherwise the tag
    filter, the type filter and the search term are applied in that order.
    """
    present = [m for m in memories if m is not None]

    if state.ai_result_ids is not None:
        wanted = set(state.ai_result_ids)
        return [m for m in present if m.id in wanted]

    result = present
    if state.tag_filter:
        result = [m for m in result if state.tag_filter in (m.tags or [])]
    if state.type_filter != ALL_TYPES:
        wanted_type = MemoryType(state.type_filter)
        result = [m for m in result if m.type == wanted_type]
    if state.search_term.strip():
        result = [m for m in result if matches_search(m, state.search_term)]
    return result


def list_tags(memories: Iterable[Memory]) -> list[tuple[str, int]]:
    """Distinct tags with usage counts, sorted by tag."""
    counts = Counter(tag for m in memories if m is not None for tag in (m.tags or []))
    return sorted(counts.items())


# ---------------------------------------------------------------------------
# Timeline
# ---------------------------------------------------------------------------

def _local_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000)


def _naive_local(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now
    return now.astimezone().replace(tzinfo=None)


def timeline_label(created_at: int, now: datetime) -> str:
    """Bucket label for a creation time, relative to ``now`` (local time)."""
    day = _local_datetime(created_at).date()
    today = _naive_local(now).date()
    day_diff = (today - day).days

    if day_diff <= 0:
        return TODAY
    if day_diff == 1:
        return YESTERDAY
    if day_diff < 7:
        return THIS_WEEK
    if day >= today.replace(day=1):
        return THIS_MONTH
    return f"{day:%B} {day.year}"


def _anchor(label: str, now: datetime) -> datetime:
    """Synthetic date used only to order buckets."""
    if label == TODAY:
        return now
    if label == YESTERDAY:
        return now - timedelta(days=1)
    if label == THIS_WEEK:
        return now - timedelta(days=2)
    if label == THIS_MONTH:
        return datetime(now.year, now.month, 1)
    return datetime.strptime(label, "%B %Y")


def group_by_timeline(
    memories: Iterable[Memory],
    now: Optional[datetime] = None,
) -> list[tuple[str, list[Memory]]]:
    """
    Partition memories into calendar-relative buckets, newest bucket first.

    Within a bucket memories keep their input order.
    """
    now = _naive_local(now or datetime.now())
    groups: dict[str, list[Memory]] = {}
    for memory in memories:
        if memory is None:
            continue
        groups.setdefault(timeline_label(memory.created_at, now), []).append(memory)
    ordered = sorted(groups, key=lambda label: _anchor(label, now), reverse=True)
    return [(label, groups[label]) for label in ordered]


# ---------------------------------------------------------------------------
# Canvas
# ---------------------------------------------------------------------------

def group_by_canvas(memories: Iterable[Memory]) -> list[tuple[str, list[Memory]]]:
    """
    Group memories by their first tag.

    Tag groups are sorted by name; untagged memories come last.
    """
    groups: dict[str, list[Memory]] = {}
    untagged: list[Memory] = []
    for memory in memories:
        if memory is None:
            continue
        if memory.tags:
            groups.setdefault(memory.tags[0], []).append(memory)
        else:
            untagged.append(memory)

    result = [(tag, groups[tag]) for tag in sorted(groups)]
    if untagged:
        result.append((UNTAGGED, untagged))
    return result


# ---------------------------------------------------------------------------
# Relationship graph
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GraphNode:
    id: str
    label: str
    type: MemoryType


@dataclass(frozen=True)
class GraphEdge:
    source: str
    target: str


@dataclass
class Graph:
    nodes: list[GraphNode] = field(default_factory=list)
    edges: list[GraphEdge] = field(default_factory=list)


def node_label(memory: Memory) -> str:
    """Summary title, else truncated content/description, else an id stub."""
    text = (memory.smart_summary.title if memory.smart_summary else None) or memory.searchable_text or ""
    if len(text) > LABEL_LENGTH:
        text = text[:LABEL_LENGTH] + "..."
    return text or f"Memory {memory.id[4:8]}"


def build_graph(memories: Iterable[Memory]) -> Graph:
    """
    One node per memory, one directed edge per related id.

    Edges whose target is not among the given memories are dropped.
    """
    visible = [m for m in memories if m is not None]
    nodes = [GraphNode(id=m.id, label=node_label(m), type=m.type) for m in visible]
    node_ids = {n.id for n in nodes}

    edges: list[GraphEdge] = []
    for memory in visible:
        for related_id in memory.related_memory_ids or []:
            if related_id in node_ids and related_id != memory.id:
                edges.append(GraphEdge(source=memory.id, target=related_id))
    return Graph(nodes=nodes, edges=edges)


def neighbor_closure(node_id: Optional[str], edges: Iterable[GraphEdge]) -> set[str]:
    """The node plus every node one edge away, in either direction."""
    if not node_id:
        return set()
    closure = {node_id}
    for edge in edges:
        if edge.source == node_id:
            closure.add(edge.target)
        if edge.target == node_id:
            closure.add(edge.source)
    return closure


def highlight_edges(node_id: Optional[str], edges: Iterable[GraphEdge]) -> list[GraphEdge]:
    """Edges touching the node."""
    if not node_id:
        return []
    return [e for e in edges if e.source == node_id or e.target == node_id]
