"""
Tests for MemoryRepository: snapshot, subscriptions, pending state, import/export.
"""

import asyncio

import pytest

from mindclone.memory_store import MemoryStore
from mindclone.repository import AlreadyProcessingError, MemoryRepository
from mindclone.types import MemoryType, ProcessingKind, SmartSummary

from tests.conftest import make_memory


class TestSnapshot:

    @pytest.mark.asyncio
    async def test_add_memory_appears_newest_first(self, repository):
        first = await repository.add_memory(MemoryType.TEXT, "first")
        second = await repository.add_memory(MemoryType.TEXT, "second", tags=["A", "a", " b "])
        assert [m.id for m in repository.memories] == [second.id, first.id]
        assert second.tags == ["a", "b"]
        assert second.id.startswith("mem_")
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_subscribers_get_every_change(self, repository):
        snapshots = []
        unsubscribe = repository.subscribe(lambda s: snapshots.append([m.id for m in s]))

        memory = await repository.add_memory(MemoryType.TEXT, "hello")
        await repository.update_memory(memory.id, content="hello again")
        await repository.delete_memory(memory.id)
        unsubscribe()
        await repository.add_memory(MemoryType.TEXT, "unseen")

        assert snapshots == [[memory.id], [memory.id], []]

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_block_others(self, repository):
        seen = []

        def broken(snapshot):
            raise RuntimeError("boom")

        repository.subscribe(broken)
        repository.subscribe(lambda s: seen.append(len(s)))
        await repository.add_memory(MemoryType.TEXT, "x")
        assert seen == [1]

    @pytest.mark.asyncio
    async def test_reopen_sees_persisted_data(self, db_path):
        async with MemoryRepository(db_path) as repo:
            await repo.add_memory(MemoryType.LINK, "https://example.com")
        async with MemoryRepository(db_path) as repo:
            assert [m.content for m in repo.memories] == ["https://example.com"]

    @pytest.mark.asyncio
    async def test_accepts_open_store(self, db_path):
        store = MemoryStore(db_path)
        store.add(make_memory("mem_1", "preloaded"))
        async with MemoryRepository(store) as repo:
            assert repo.get("mem_1").content == "preloaded"


class TestMutations:

    @pytest.mark.asyncio
    async def test_insert_duplicate_rejected(self, repository):
        assert await repository.insert(make_memory("mem_1", "one")) is True
        assert await repository.insert(make_memory("mem_1", "two")) is False
        assert len(repository.memories) == 1
        assert repository.get("mem_1").content == "one"

    @pytest.mark.asyncio
    async def test_partial_update(self, repository):
        memory = await repository.add_memory(MemoryType.TEXT, "text", tags=["x"])
        summary = SmartSummary("Title", "Summary", ["p"])
        assert await repository.update_memory(memory.id, smart_summary=summary)
        got = repository.get(memory.id)
        assert got.smart_summary == summary
        assert got.tags == ["x"]
        assert got.content == "text"

    @pytest.mark.asyncio
    async def test_update_missing_id(self, repository):
        assert await repository.update_memory("mem_404", content="x") is False

    @pytest.mark.asyncio
    async def test_update_immutable_field_rejected(self, repository):
        memory = await repository.add_memory(MemoryType.TEXT, "text")
        assert await repository.update_memory(memory.id, created_at=1) is False
        assert repository.get(memory.id).created_at == memory.created_at

    @pytest.mark.asyncio
    async def test_bulk_delete_three_of_five(self, repository):
        ids = [(await repository.add_memory(MemoryType.TEXT, f"m{i}")).id for i in range(5)]
        assert await repository.delete_multiple_memories(ids[:3]) == 3
        assert [m.id for m in repository.memories] == list(reversed(ids[3:]))
        assert all(repository.get(i) is None for i in ids[:3])

    @pytest.mark.asyncio
    async def test_bulk_tag_is_union(self, repository):
        a = await repository.add_memory(MemoryType.TEXT, "a", tags=["work"])
        b = await repository.add_memory(MemoryType.TEXT, "b")
        outside = await repository.add_memory(MemoryType.TEXT, "c", tags=["home"])
        count = await repository.add_tags_to_multiple_memories([a.id, b.id], ["Urgent", "work"])
        assert count == 2
        assert repository.get(a.id).tags == ["work", "urgent"]
        assert repository.get(b.id).tags == ["urgent", "work"]
        untouched = repository.store.get(outside.id)
        assert (untouched.content, untouched.created_at) == (outside.content, outside.created_at)
        assert untouched.tags == ["home"]
        assert repository.get(outside.id).tags == ["home"]

    @pytest.mark.asyncio
    async def test_bulk_tag_nothing_to_do(self, repository):
        a = await repository.add_memory(MemoryType.TEXT, "a")
        assert await repository.add_tags_to_multiple_memories([a.id], []) == 0
        assert await repository.add_tags_to_multiple_memories([], ["x"]) == 0

    @pytest.mark.asyncio
    async def test_concurrent_writes_apply_in_order(self, repository):
        memory = await repository.add_memory(MemoryType.TEXT, "v0")
        await asyncio.gather(*(
            repository.update_memory(memory.id, content=f"v{i}") for i in range(1, 6)
        ))
        assert repository.get(memory.id).content == "v5"

    @pytest.mark.asyncio
    async def test_store_failure_leaves_snapshot(self, repository, monkeypatch):
        import sqlite3

        await repository.add_memory(MemoryType.TEXT, "kept")
        before = [m.id for m in repository.memories]

        def broken(memory):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(repository.store, "add", broken)
        assert await repository.add_memory(MemoryType.TEXT, "lost") is None
        assert [m.id for m in repository.memories] == before


class TestProcessing:

    @pytest.mark.asyncio
    async def test_pending_overlay_and_reset(self, repository):
        memory = await repository.add_memory(MemoryType.TEXT, "x")
        async with repository.processing(memory.id, ProcessingKind.SUMMARY):
            current = repository.get(memory.id)
            assert current.is_processing_summary
            assert not current.is_processing_ai
        assert not repository.get(memory.id).is_processing_summary

    @pytest.mark.asyncio
    async def test_pending_cleared_on_error(self, repository):
        memory = await repository.add_memory(MemoryType.TEXT, "x")
        with pytest.raises(RuntimeError):
            async with repository.processing(memory.id, ProcessingKind.AI):
                raise RuntimeError("model failed")
        assert not repository.get(memory.id).is_processing_ai
        assert not repository.is_processing(memory.id, ProcessingKind.AI)

    @pytest.mark.asyncio
    async def test_same_kind_is_single_flight(self, repository):
        memory = await repository.add_memory(MemoryType.TEXT, "x")
        async with repository.processing(memory.id, ProcessingKind.SUMMARY):
            with pytest.raises(AlreadyProcessingError):
                async with repository.processing(memory.id, ProcessingKind.SUMMARY):
                    pass
            # A different kind may run alongside
            async with repository.processing(memory.id, ProcessingKind.AI):
                assert repository.get(memory.id).pending == {
                    ProcessingKind.SUMMARY, ProcessingKind.AI,
                }

    @pytest.mark.asyncio
    async def test_pending_never_persisted(self, db_path):
        async with MemoryRepository(db_path) as repo:
            memory = await repo.add_memory(MemoryType.TEXT, "x")
            async with repo.processing(memory.id, ProcessingKind.SUMMARY):
                await repo.update_memory(memory.id, content="y")
        async with MemoryRepository(db_path) as repo:
            assert repo.get(memory.id).pending == frozenset()


class TestExportImport:

    @pytest.mark.asyncio
    async def test_export_then_merge_into_empty(self, repository, tmp_path):
        a = await repository.add_memory(MemoryType.TEXT, "alpha", tags=["t"])
        await repository.update_memory(a.id, smart_summary=SmartSummary("A", "alpha", []))
        data = repository.export_data()
        assert data["format"] == "mindclone-export"
        assert len(data["memories"]) == 1

        async with MemoryRepository(tmp_path / "other.db") as other:
            assert await other.import_data(data) == 1
            got = other.get(a.id)
            assert got.content == "alpha"
            assert got.tags == ["t"]
            assert got.smart_summary.title == "A"

    @pytest.mark.asyncio
    async def test_replace_clears_existing(self, repository):
        await repository.add_memory(MemoryType.TEXT, "old")
        data = {"memories": [make_memory("mem_5", "new").to_dict()]}
        assert await repository.import_data(data, mode="replace") == 1
        assert [m.id for m in repository.memories] == ["mem_5"]

    @pytest.mark.asyncio
    async def test_unknown_mode(self, repository):
        with pytest.raises(ValueError):
            await repository.import_data({"memories": []}, mode="append")
