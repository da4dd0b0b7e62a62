"""
Workspace: the user-facing session over one memory collection.

Ties the repository, the inference gateway and the derived views together.
It holds the session state a front end would: the current filters, the
AI result set, the global chat history, per-memory chat histories and the
cached dashboard insights.

AI operations never raise past the workspace. Their failures are logged
and turn into chat error messages or leave the memory unchanged.
"""

import logging
from datetime import datetime
from typing import Any, Iterable, Optional

from .gateway import InferenceGateway
from .providers.base import InferenceError
from .repository import AlreadyProcessingError, MemoryRepository
from .types import (
    AiAction,
    ChatMessage,
    ImageData,
    Memory,
    MemoryType,
    ProcessingKind,
    normalize_tag,
    normalize_tags,
)
from . import views
from .views import FilterState, Graph

logger = logging.getLogger(__name__)

GLOBAL_QUERY_ERROR = "Sorry, I encountered an error while searching your memories. Please try again."
CHAT_ERROR = "Sorry, I encountered an error. Please try again."
ACTION_ERROR = "Sorry, I failed to perform the action. Please try again."

TEXT_ACTIONS = {
    AiAction.REWRITE, AiAction.TRANSLATE, AiAction.EXTRACT, AiAction.IDEAS,
    AiAction.CONTINUE_WRITING, AiAction.PLAN_TRIP,
}
IMAGE_ACTIONS = {AiAction.STORY, AiAction.ANALYZE_IMAGE}


class ValidationError(ValueError):
    """User input rejected before any work was started."""


class Workspace:
    """
    Session over a repository and a gateway.

    Usage:
        async with MemoryRepository(path) as repo:
            ws = Workspace(repo, InferenceGateway(provider))
            memory = await ws.capture(MemoryType.TEXT, "Buy milk")
            await ws.generate_smart_summary(memory.id)
    """

    def __init__(self, repository: MemoryRepository, gateway: InferenceGateway):
        self.repository = repository
        self.gateway = gateway
        self.filters = FilterState()
        self.global_history: list[ChatMessage] = []
        self.memory_chats: dict[str, list[ChatMessage]] = {}
        self._insights: Optional[list[str]] = None
        self._closed = False
        self._unsubscribe = repository.subscribe(self._on_snapshot)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop the session. AI results that arrive later are dropped."""
        if self._closed:
            return
        self._closed = True
        self._unsubscribe()

    def _on_snapshot(self, snapshot: list[Memory]) -> None:
        if not snapshot:
            self._insights = None
        live = {m.id for m in snapshot}
        for id in list(self.memory_chats):
            if id not in live:
                del self.memory_chats[id]

    @property
    def memories(self) -> list[Memory]:
        return self.repository.memories

    def _discard(self, what: str) -> bool:
        if self._closed:
            logger.debug("Discarding %s result after close", what)
        return self._closed

    # -------------------------------------------------------------------------
    # Capture and editing
    # -------------------------------------------------------------------------

    async def capture(
        self,
        type: MemoryType,
        content: Optional[str] = None,
        *,
        image: Optional[ImageData] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> Optional[Memory]:
        """
        Create a memory from user input.

        Images are described by the model first; the description is what
        makes them searchable. Tags given explicitly are used as-is,
        otherwise tags are suggested from the content and the user's
        existing vocabulary.

        Raises:
            ValidationError: Empty text/link content or a missing image
            InferenceError: The image could not be described
        """
        type = MemoryType(type)
        user_tags = normalize_tags(tags)

        if type == MemoryType.IMAGE:
            if image is None:
                raise ValidationError("Please select an image file.")
        elif not (content or "").strip():
            raise ValidationError("Content cannot be empty.")

        description = None
        if type == MemoryType.IMAGE:
            description = await self.gateway.describe_image(image)
            content = image.to_data_url()
            tagging_text = description
        else:
            tagging_text = content

        if user_tags:
            final_tags = user_tags
        else:
            final_tags = await self.gateway.suggest_tags(tagging_text, self.memories)

        if self._discard("capture"):
            return None
        return await self.repository.add_memory(type, content, description=description, tags=final_tags)

    async def save_as_new_memory(self, text: str) -> Optional[Memory]:
        """Store an AI answer as a new text memory."""
        if not text.strip():
            raise ValidationError("Content cannot be empty.")
        return await self.repository.add_memory(MemoryType.TEXT, text)

    async def add_tag(self, id: str, tag: str) -> bool:
        memory = self.repository.get(id)
        tag = normalize_tag(tag)
        if memory is None or not tag or tag in memory.tags:
            return False
        return await self.repository.update_memory(id, tags=memory.tags + [tag])

    async def remove_tag(self, id: str, tag: str) -> bool:
        memory = self.repository.get(id)
        tag = normalize_tag(tag)
        if memory is None or tag not in memory.tags:
            return False
        return await self.repository.update_memory(id, tags=[t for t in memory.tags if t != tag])

    async def delete(self, id: str) -> bool:
        return await self.repository.delete_memory(id)

    async def bulk_delete(self, ids: Iterable[str]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        return await self.repository.delete_multiple_memories(ids)

    async def bulk_tag(self, ids: Iterable[str], tags: Iterable[str]) -> int:
        return await self.repository.add_tags_to_multiple_memories(ids, tags)

    # -------------------------------------------------------------------------
    # Per-memory AI operations
    # -------------------------------------------------------------------------

    async def generate_smart_summary(self, id: str) -> bool:
        """
        Summarize a text or link memory and store the result.

        Returns:
            True if a summary was stored
        """
        memory = self.repository.get(id)
        if memory is None or memory.type == MemoryType.IMAGE:
            return False
        try:
            async with self.repository.processing(id, ProcessingKind.SUMMARY):
                summary = await self.gateway.summarize(memory.content)
                if self._discard("summary"):
                    return False
                return await self.repository.update_memory(id, smart_summary=summary)
        except AlreadyProcessingError:
            logger.info("Summary already being generated for %s", id)
        except InferenceError as e:
            logger.error("Failed to generate smart summary for %s: %s", id, e)
        return False

    async def find_related_memories(self, id: str) -> Optional[list[str]]:
        """
        Ask the model which memories relate to this one and store the ids.

        Returns:
            The stored ids, or None if nothing was stored
        """
        memory = self.repository.get(id)
        if memory is None:
            return None
        try:
            async with self.repository.processing(id, ProcessingKind.AI):
                related = await self.gateway.find_related(memory, self.memories)
                if self._discard("related memories"):
                    return None
                ok = await self.repository.update_memory(id, related_memory_ids=related)
                return related if ok else None
        except AlreadyProcessingError:
            logger.info("Related-memory search already running for %s", id)
            return None

    async def chat(self, id: str, question: str) -> Optional[ChatMessage]:
        """
        Ask a question about one memory, keeping that memory's chat history.

        Returns:
            The AI reply (an error message on failure), or None if the memory
            does not exist or the session is closed
        """
        memory = self.repository.get(id)
        if memory is None or not question.strip():
            return None
        history = self.memory_chats.setdefault(id, [])
        prior = list(history)
        history.append(ChatMessage(sender="user", text=question.strip()))
        try:
            if memory.type == MemoryType.IMAGE:
                answer = await self.gateway.chat_with_image_memory(memory.content, question, prior)
            else:
                answer = await self.gateway.chat_with_text_memory(memory.content, question, prior)
            reply = ChatMessage(sender="ai", text=answer)
        except InferenceError as e:
            logger.error("Chat with memory %s failed: %s", id, e)
            reply = ChatMessage(sender="ai", text=CHAT_ERROR)
        if self._discard("chat"):
            return None
        history.append(reply)
        return reply

    async def run_action(self, id: str, action: AiAction, **options: Any) -> Optional[ChatMessage]:
        """
        Run an AI action on a memory.

        Smart summary and related-memory search update the memory itself
        and return None. Every other action appends a user/AI exchange to
        the memory's chat; successful answers can be saved as new memories.

        Options:
            tone: for REWRITE (default "Formal")
            language: for TRANSLATE (default "Spanish")
        """
        action = AiAction(action)
        memory = self.repository.get(id)
        if memory is None:
            return None

        if action == AiAction.SMART_SUMMARY:
            await self.generate_smart_summary(id)
            return None
        if action == AiAction.FIND_RELATED:
            await self.find_related_memories(id)
            return None

        if memory.type == MemoryType.IMAGE and action in TEXT_ACTIONS:
            raise ValidationError(f"{action.value} needs a text or link memory")
        if memory.type != MemoryType.IMAGE and action in IMAGE_ACTIONS:
            raise ValidationError(f"{action.value} needs an image memory")

        request, call = self._action_call(memory, action, options)
        history = self.memory_chats.setdefault(id, [])
        history.append(ChatMessage(sender="user", text=request))
        try:
            reply = ChatMessage(sender="ai", text=await call, is_savable=True)
        except InferenceError as e:
            logger.error("AI action %s on %s failed: %s", action.value, id, e)
            reply = ChatMessage(sender="ai", text=ACTION_ERROR)
        if self._discard(action.value):
            return None
        history.append(reply)
        return reply

    def _action_call(self, memory: Memory, action: AiAction, options: dict[str, Any]):
        """(user-visible request, pending gateway coroutine) for an action."""
        g = self.gateway
        text = memory.content
        if action == AiAction.REWRITE:
            tone = options.get("tone", "Formal")
            return (
                f"Rewrite this memory in a {tone} tone.",
                g.perform_text_action(text, f"Rewrite the following text in a {tone} tone. Output only the rewritten text."),
            )
        if action == AiAction.TRANSLATE:
            language = options.get("language", "Spanish")
            return (
                f"Translate this memory to {language}.",
                g.perform_text_action(text, f"Translate the following text to {language}. Output only the translated text."),
            )
        if action == AiAction.EXTRACT:
            return (
                "Extract key info from this memory.",
                g.perform_text_action(
                    text,
                    "Extract key information (like people, places, dates, and action items) "
                    "from the following text. Format the output clearly with headings.",
                ),
            )
        if action == AiAction.IDEAS:
            return (
                "Generate ideas based on this memory.",
                g.perform_text_action(
                    text,
                    "Based on the following text, generate a list of creative ideas (e.g., a tweet, "
                    "a blog post title, related questions to explore). Format the output clearly.",
                ),
            )
        if action == AiAction.STORY:
            return "Tell me a story about this image.", g.generate_story_from_image(text)
        if action == AiAction.CONTINUE_WRITING:
            return "Continue writing based on this memory.", g.continue_writing(text)
        if action == AiAction.ANALYZE_IMAGE:
            return "Analyze this image in detail.", g.analyze_image(text)
        if action == AiAction.PLAN_TRIP:
            return "Plan a trip based on this memory.", g.plan_trip(text)
        raise ValueError(f"Unsupported action: {action.value}")

    # -------------------------------------------------------------------------
    # Whole-collection query and insights
    # -------------------------------------------------------------------------

    async def global_query(self, question: str) -> Optional[ChatMessage]:
        """
        Ask a question across all memories.

        The cited memories become the AI result set, which overrides the
        manual filters until a filter changes or it is cleared.
        """
        if not question.strip():
            return None
        prior = list(self.global_history)
        self.global_history.append(ChatMessage(sender="user", text=question))
        try:
            result = await self.gateway.query_all(question, prior, self.memories)
            reply = ChatMessage(sender="ai", text=result.text, sources=list(result.sources))
            ids = result.memory_ids
        except InferenceError as e:
            logger.error("Global query failed: %s", e)
            reply = ChatMessage(sender="ai", text=GLOBAL_QUERY_ERROR)
            ids = []
        if self._discard("global query"):
            return None
        self.global_history.append(reply)
        self.filters = self.filters.with_ai_results(ids)
        return reply

    async def insights(self) -> list[str]:
        """Suggested questions, fetched once while the collection is non-empty."""
        memories = self.memories
        if not memories:
            self._insights = None
            return []
        if self._insights is None:
            insights = await self.gateway.dashboard_insights(memories)
            if self._discard("insights"):
                return []
            self._insights = insights
        return list(self._insights)

    # -------------------------------------------------------------------------
    # Filters and views
    # -------------------------------------------------------------------------

    def set_search_term(self, term: str) -> None:
        self.filters = self.filters.with_search_term(term)

    def set_type_filter(self, type_filter) -> None:
        self.filters = self.filters.with_type_filter(type_filter)

    def set_tag_filter(self, tag: Optional[str]) -> None:
        self.filters = self.filters.with_tag_filter(normalize_tag(tag) if tag else None)

    def clear_ai_filter(self) -> None:
        self.filters = self.filters.cleared_ai()

    def visible_memories(self) -> list[Memory]:
        return views.filter_memories(self.memories, self.filters)

    def timeline(self, now: Optional[datetime] = None) -> list[tuple[str, list[Memory]]]:
        return views.group_by_timeline(self.visible_memories(), now)

    def canvas(self) -> list[tuple[str, list[Memory]]]:
        return views.group_by_canvas(self.visible_memories())

    def graph(self) -> Graph:
        return views.build_graph(self.visible_memories())

    def tags(self) -> list[tuple[str, int]]:
        return views.list_tags(self.memories)
