"""
Inference gateway: every AI capability the app uses, as typed async calls.

The gateway owns the prompts and the response parsing. It talks to a single
``InferenceProvider`` and bounds every call with a timeout. Calls that have
a sensible fallback (tags, related memories, insights) return it on
failure; the rest raise ``InferenceError``.
"""

import asyncio
import logging
import re
from datetime import datetime
from collections.abc import Sequence
from typing import Any, Optional

from .providers.base import Completion, InferenceError, InferenceProvider, parse_json_object
from .types import (
    ChatMessage,
    ImageData,
    Memory,
    MemoryType,
    QueryResult,
    SmartSummary,
    normalize_tags,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0
TAG_CONTEXT_LIMIT = 20
MAX_TAGS = 5
MAX_RELATED = 5
INSIGHT_MEMORY_LIMIT = 10

NO_MEMORIES_ANSWER = "You don't have any memories saved yet. Add some content first!"

DEFAULT_INSIGHTS = [
    "Summarize my recent notes",
    "What are the main topics I've saved?",
    "Draft a tweet based on my latest memory",
]


# -----------------------------------------------------------------------------
# Prompts
# -----------------------------------------------------------------------------

SMART_SUMMARY_SYSTEM = """You are an AI assistant that creates a "Smart Summary" of a given text.
Analyze the text and generate a JSON object with three fields:
1.  "title": A short, catchy title (5-10 words).
2.  "summary": A concise one-paragraph summary.
3.  "keyPoints": An array of strings, with each string being a key takeaway or action item. Extract a maximum of 3 key points."""

SMART_SUMMARY_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "title": {"type": "STRING", "description": "A short, catchy title."},
        "summary": {"type": "STRING", "description": "A concise one-paragraph summary."},
        "keyPoints": {
            "type": "ARRAY",
            "description": "A list of key takeaways.",
            "items": {"type": "STRING"},
        },
    },
    "required": ["title", "summary", "keyPoints"],
}

TAGS_SYSTEM = """You are an AI assistant that helps organize memories by generating relevant tags.
Based on the 'New Memory Content' and the context of 'Existing Memories', generate up to 5 relevant, single-word, lowercase tags.
Prioritize reusing tags from existing memories if the content is similar. Only create new tags if necessary.
Return the tags as a JSON object with a "tags" key containing an array of strings. For example: {"tags": ["work", "project", "javascript"]}"""

TAGS_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "tags": {
            "type": "ARRAY",
            "description": "A list of 1-5 single-word, lowercase tags.",
            "items": {"type": "STRING", "description": "A single-word, lowercase tag."},
        },
    },
}

RELATED_SYSTEM = """You are an AI assistant that finds connections between memories.
Analyze the 'Target Memory' and compare it against the 'List of Candidate Memories'.
Identify the 3 to 5 most semantically related memories based on shared topics, concepts, or context.
Return a JSON object with a single key, "relatedIds", containing an array of the IDs of the most related memories.
Example: {"relatedIds": ["mem_12345", "mem_67890"]}"""

RELATED_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "relatedIds": {
            "type": "ARRAY",
            "description": "An array of memory IDs.",
            "items": {"type": "STRING"},
        },
    },
    "required": ["relatedIds"],
}

QUERY_SYSTEM = """You are a helpful AI assistant for a personal knowledge app called MindClone. Your task is to answer the user's question based on the provided list of their saved "memories". You can also use web search to find up-to-date information or to get context about link/URL memories.

Synthesize information across multiple memories and search results if necessary.

When you use information from a memory, you MUST cite its ID. At the very end of your response, on a new line, list all cited memory IDs in the format:
Relevant Memories: [mem_12345, mem_67890]

If no memories are relevant, use "Relevant Memories: []". This is a strict formatting requirement.

Here is the list of memories:
{memories}"""

INSIGHTS_SYSTEM = """You are a proactive AI assistant for a personal knowledge app.
Analyze the user's recent memories and identify potential themes, connections, or tasks.
Generate 3 concise, actionable prompts or questions that the user might want to ask.
Frame them as if the user is asking. For example: "Summarize my notes about project X" or "What's the connection between my notes on AI and my saved link about marketing?".
Return a JSON object with a single key, "insights", containing an array of exactly 3 strings."""

INSIGHTS_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "insights": {
            "type": "ARRAY",
            "description": "An array of 3 actionable prompts.",
            "items": {"type": "STRING"},
        },
    },
    "required": ["insights"],
}

CONTINUE_PROMPT = (
    "The user has provided the following text. Continue writing the next paragraph, "
    "maintaining the same style and tone. Do not repeat the original text.\n\n---\n{text}\n---"
)

TRIP_PROMPT = (
    "Based on the following context, create a sample 3-day travel itinerary. The context "
    "might be a place name, a description, or a URL to a travel blog. Be creative and suggest "
    "interesting activities, places to eat, and logical daily schedules. If the context is "
    "vague, make reasonable assumptions.\n\n---\n{context}\n---"
)

ANALYZE_IMAGE_PROMPT = (
    "Analyze this image in detail. Identify key objects, read any visible text, and describe "
    "the overall scene and context. Format the output with clear headings for each section "
    "(e.g., Objects, Text, Scene Description)."
)

STORY_PROMPT = "Write a short, imaginative story inspired by this image."

DESCRIBE_IMAGE_PROMPT = (
    "Briefly describe this image in a single sentence. "
    "This description will be used for search purposes."
)


# -----------------------------------------------------------------------------
# Serialization helpers
# -----------------------------------------------------------------------------

def _preview(text: Optional[str], limit: int) -> str:
    text = text or ""
    return text[:limit] + ("..." if len(text) > limit else "")


def format_history(history: Sequence[ChatMessage]) -> str:
    return "\n".join(f"{msg.sender}: {msg.text}" for msg in history)


def serialize_for_tags(memory: Memory) -> str:
    return f"- Content: {_preview(memory.searchable_text, 150)}\n- Tags: [{', '.join(memory.tags)}]"


def serialize_for_analysis(memory: Memory) -> str:
    if memory.type == MemoryType.IMAGE:
        preview = f'Description: "{memory.description or "No description available."}"'
    else:
        preview = f'Content: "{_preview(memory.content, 200)}"'
    tags = f"Tags: [{', '.join(memory.tags)}]" if memory.tags else ""
    return f"- ID: {memory.id}\n- Type: {memory.type.value}\n- {preview}\n- {tags}"


def serialize_for_query(memory: Memory) -> str:
    if memory.type == MemoryType.TEXT:
        preview = f'Content: "{_preview(memory.content, 200)}"'
    elif memory.type == MemoryType.IMAGE:
        preview = f'Description: "{memory.description or "No description available."}"'
    else:
        preview = f'URL: "{memory.content}"'
    created = datetime.fromtimestamp(memory.created_at / 1000).strftime("%Y-%m-%d %H:%M")
    return (
        f"---\n- ID: {memory.id}\n- Type: {memory.type.value}\n"
        f"- Created: {created}\n- {preview}\n---"
    )


def serialize_for_insight(memory: Memory) -> str:
    tags = f"[{', '.join(memory.tags)}]" if memory.tags else ""
    content = (memory.searchable_text or "")[:100]
    return f'- Type: {memory.type.value}, Content: "{content}...", Tags: {tags}'


# Single-line trailer at the very end; earlier mentions in the answer don't count
_TRAILER_RE = re.compile(r"Relevant Memories:[ \t]*\[([^\]\n]*)\]\s*$")


def parse_relevant_memories(text: str) -> tuple[str, list[str]]:
    """
    Split the citation trailer off a whole-collection answer.

    Returns:
        (answer without the trailer, cited ids). Text without a trailer is
        returned unchanged with no ids.
    """
    match = _TRAILER_RE.search(text or "")
    if not match:
        return (text or "").strip(), []
    answer = text[:match.start()].strip()
    ids = [part.strip().strip("'\"") for part in match.group(1).split(",")]
    return answer, [i for i in ids if i]


# -----------------------------------------------------------------------------
# Gateway
# -----------------------------------------------------------------------------

class InferenceGateway:
    """
    Typed AI operations over one inference provider.

    Usage:
        gateway = InferenceGateway(provider, timeout=30)
        summary = await gateway.summarize("Meeting notes ...")
    """

    def __init__(
        self,
        provider: InferenceProvider,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        tag_context_limit: int = TAG_CONTEXT_LIMIT,
    ):
        self._provider = provider
        self.timeout = timeout
        self.tag_context_limit = tag_context_limit

    async def _call(self, what: str, prompt: str, **kwargs: Any) -> Completion:
        """Run one provider call with the timeout, wrapping every failure."""
        try:
            return await asyncio.wait_for(
                self._provider.generate(prompt, **kwargs), timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise InferenceError(f"{what} timed out after {self.timeout:g}s") from None
        except InferenceError:
            raise
        except Exception as e:
            raise InferenceError(f"{what} failed: {e}") from e

    async def _text(self, what: str, prompt: str, **kwargs: Any) -> str:
        completion = await self._call(what, prompt, **kwargs)
        text = (completion.text or "").strip()
        if not text:
            raise InferenceError(f"{what} returned an empty response")
        return text

    async def _json(self, what: str, prompt: str, schema: dict, system: str) -> dict[str, Any]:
        completion = await self._call(what, prompt, system=system, json_schema=schema)
        return parse_json_object(completion.text)

    # -------------------------------------------------------------------------
    # Structured results
    # -------------------------------------------------------------------------

    async def summarize(self, text: str) -> SmartSummary:
        """
        Create a smart summary (title, one paragraph, up to 3 key points).

        Raises:
            InferenceError: On any failure
        """
        data = await self._json(
            "Smart summary",
            f"Generate a smart summary for this text:\n\n---\n{text}\n---",
            SMART_SUMMARY_SCHEMA,
            SMART_SUMMARY_SYSTEM,
        )
        summary = SmartSummary.from_dict(data)
        if not summary.title and not summary.summary:
            raise InferenceError("Smart summary was empty")
        return summary

    async def suggest_tags(self, content: str, memories: Sequence[Memory]) -> list[str]:
        """
        Suggest up to five single-word lowercase tags for new content.

        Existing tagged memories (at most ``tag_context_limit``) are shown to
        the model so it can reuse the user's vocabulary. Returns [] on failure.
        """
        context = "\n---\n".join(
            serialize_for_tags(m)
            for m in [m for m in memories if m.tags][:self.tag_context_limit]
        )
        prompt = (
            f"CONTEXT of Existing Memories:\n{context}\n\n---\n\n"
            f'New Memory Content to tag:\n"{content}"'
        )
        try:
            data = await self._json("Tag suggestion", prompt, TAGS_SCHEMA, TAGS_SYSTEM)
        except InferenceError as e:
            logger.warning("Tag suggestion failed: %s", e)
            return []
        raw = data.get("tags") or []
        if not isinstance(raw, list):
            return []
        tags = [t for t in normalize_tags(raw) if len(t.split()) == 1]
        return tags[:MAX_TAGS]

    async def find_related(self, target: Memory, memories: Sequence[Memory]) -> list[str]:
        """
        Pick the memories most related to ``target``.

        Only ids of existing candidates are returned, never the target
        itself, at most five. Returns [] on failure or with no candidates.
        """
        candidates = [m for m in memories if m.id != target.id]
        if not candidates:
            return []
        prompt = (
            f"TARGET MEMORY:\n{serialize_for_analysis(target)}\n\n---\n\n"
            "LIST OF CANDIDATE MEMORIES:\n"
            + "\n---\n".join(serialize_for_analysis(m) for m in candidates)
        )
        try:
            data = await self._json("Related memories", prompt, RELATED_SCHEMA, RELATED_SYSTEM)
        except InferenceError as e:
            logger.warning("Finding related memories failed: %s", e)
            return []

        raw = data.get("relatedIds") or []
        if not isinstance(raw, list):
            logger.warning("Related memories: expected a list of ids, got %s", type(raw).__name__)
            return []
        known = {m.id for m in candidates}
        result: list[str] = []
        for id in raw:
            if isinstance(id, str) and id in known and id not in result:
                result.append(id)
        dropped = len(raw) - len(result)
        if dropped > 0:
            logger.debug("Dropped %d unknown or repeated related ids", dropped)
        return result[:MAX_RELATED]

    async def dashboard_insights(self, memories: Sequence[Memory]) -> list[str]:
        """Exactly three suggested questions, based on the most recent memories."""
        if len(memories) < 3:
            return list(DEFAULT_INSIGHTS)
        recent = list(memories)[:INSIGHT_MEMORY_LIMIT]
        prompt = "Here are the user's recent memories:\n" + "\n".join(
            serialize_for_insight(m) for m in recent
        )
        try:
            data = await self._json("Dashboard insights", prompt, INSIGHTS_SCHEMA, INSIGHTS_SYSTEM)
        except InferenceError as e:
            logger.warning("Dashboard insights failed: %s", e)
            return list(DEFAULT_INSIGHTS)
        raw = data.get("insights") or []
        if not isinstance(raw, list):
            logger.warning("Dashboard insights: expected a list, got %s", type(raw).__name__)
            return list(DEFAULT_INSIGHTS)
        insights = [s.strip() for s in raw if isinstance(s, str) and s.strip()]
        if len(insights) < 3:
            logger.warning("Dashboard insights returned %d prompts, using defaults", len(insights))
            return list(DEFAULT_INSIGHTS)
        return insights[:3]

    async def query_all(
        self,
        question: str,
        history: Sequence[ChatMessage],
        memories: Sequence[Memory],
    ) -> QueryResult:
        """
        Answer a question across the whole collection, citing memories.

        Raises:
            InferenceError: On any failure
        """
        if not memories:
            return QueryResult(text=NO_MEMORIES_ANSWER)
        system = QUERY_SYSTEM.format(memories="\n".join(serialize_for_query(m) for m in memories))
        completion = await self._call(
            "Global query", question, system=system, history=history, web_search=True,
        )
        if not (completion.text or "").strip():
            raise InferenceError("Global query returned an empty response")
        text, ids = parse_relevant_memories(completion.text)
        return QueryResult(text=text, memory_ids=ids, sources=list(completion.sources))

    # -------------------------------------------------------------------------
    # Free-text results
    # -------------------------------------------------------------------------

    async def chat_with_text_memory(
        self,
        content: str,
        question: str,
        history: Sequence[ChatMessage],
    ) -> str:
        prompt = (
            "You are an AI assistant. Answer the user's question based ONLY on the following "
            "context and chat history. If the answer isn't in the context, say you can't find "
            "the information in this memory.\n\n"
            f"CHAT HISTORY:\n---\n{format_history(history)}\n---\n\n"
            f"CONTEXT:\n---\n{content}\n---\n\n"
            f"USER QUESTION: {question}"
        )
        return await self._text("Memory chat", prompt)

    async def chat_with_image_memory(
        self,
        data_url: str,
        question: str,
        history: Sequence[ChatMessage],
    ) -> str:
        prompt = (
            "You are an AI assistant. Answer the user's question based ONLY on the provided "
            "image and chat history.\n\n"
            f"CHAT HISTORY:\n---\n{format_history(history)}\n---\n\n"
            f"USER QUESTION: {question}"
        )
        return await self._text("Image chat", prompt, images=[_image(data_url)])

    async def perform_text_action(self, text: str, instruction: str) -> str:
        return await self._text("Text action", f'{instruction}\n\nText: "{text}"')

    async def continue_writing(self, text: str) -> str:
        return await self._text("Continue writing", CONTINUE_PROMPT.format(text=text))

    async def plan_trip(self, context: str) -> str:
        return await self._text("Trip planning", TRIP_PROMPT.format(context=context))

    async def analyze_image(self, data_url: str) -> str:
        return await self._text("Image analysis", ANALYZE_IMAGE_PROMPT, images=[_image(data_url)])

    async def generate_story_from_image(self, data_url: str) -> str:
        return await self._text("Image story", STORY_PROMPT, images=[_image(data_url)])

    async def describe_image(self, image: ImageData) -> str:
        """One-sentence description used to make an image searchable."""
        return await self._text("Image description", DESCRIBE_IMAGE_PROMPT, images=[image])


def _image(data_url: str) -> ImageData:
    try:
        return ImageData.from_data_url(data_url)
    except ValueError as e:
        raise InferenceError(str(e)) from e
