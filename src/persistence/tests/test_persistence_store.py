"""
Tests for Persistence Store
===========================
Runs against a real SQLite database per test.
"""

from datetime import timedelta

import pytest

from scanning.models import TaskStatus, utcnow

from ..config import PersistenceConfig
from ..exceptions import PersistenceError
from ..models import SearchOptions
from ..persistence_store import PersistenceStore
from ..repositories import FileRepository, HistoryRepository
from .conftest import make_task


async def insert_history(store, task, days_ago=0, keep_blob=False):
    """Insert a history row with a chosen completion time."""
    async with store.db.transaction() as session:
        if keep_blob:
            await FileRepository(session).save(task.file)
        return await HistoryRepository(session).add(
            task,
            has_file=keep_blob,
            completed_at=utcnow() - timedelta(days=days_ago),
        )


class TestQueue:

    @pytest.mark.asyncio
    async def test_save_and_load_round_trip(self, store):
        pending = make_task("a.exe", b"aaaa", archive_name="upload.zip")
        scanning = make_task("b.dll", b"bb", status=TaskStatus.SCANNING)

        assert await store.save_queue([pending, scanning]) == 2
        loaded = await store.load_queue()

        assert [t.id for t in loaded] == [pending.id, scanning.id]
        assert loaded[0].file.content == b"aaaa"
        assert loaded[0].archive_name == "upload.zip"
        assert loaded[1].status == TaskStatus.SCANNING
        assert loaded[1].analysis_id == scanning.analysis_id
        assert loaded[0].created_at == pending.created_at

    @pytest.mark.asyncio
    async def test_save_replaces_previous_snapshot(self, store):
        await store.save_queue([make_task("old.bin", b"old")])
        fresh = make_task("new.bin", b"new")

        await store.save_queue([fresh])

        assert [t.id for t in await store.load_queue()] == [fresh.id]

    @pytest.mark.asyncio
    async def test_tasks_without_content_are_dropped_unless_terminal(self, store):
        orphan = make_task("orphan.bin", content=None)
        failed = make_task("failed.bin", content=None, status=TaskStatus.ERROR)

        await store.save_queue([orphan, failed])
        loaded = await store.load_queue()

        assert [t.id for t in loaded] == [failed.id]
        assert loaded[0].error == "Upload failed"

    @pytest.mark.asyncio
    async def test_completed_task_round_trips_report(self, store):
        done = make_task("done.exe", b"done", status=TaskStatus.COMPLETED, malicious=3)

        await store.save_queue([done])
        loaded = (await store.load_queue())[0]

        assert loaded.report.stats.malicious == 3
        assert loaded.report.file_info.sha256 == "ab" * 32

    @pytest.mark.asyncio
    async def test_clear_queue_collects_blobs(self, store):
        await store.save_queue([make_task("a.bin", b"a")])

        await store.clear_queue()

        stats = await store.get_storage_stats()
        assert stats.queue_count == 0
        assert stats.file_count == 0


class TestHistory:

    @pytest.mark.asyncio
    async def test_only_terminal_tasks_enter_history(self, store):
        with pytest.raises(ValueError):
            await store.add_to_history(make_task("pending.bin"))

    @pytest.mark.asyncio
    async def test_clean_result_keeps_blob(self, store):
        task = make_task("clean.exe", b"clean bytes", status=TaskStatus.COMPLETED)

        entry = await store.add_to_history(task)

        assert entry.has_file is True
        stored = await store.get_history_file(task.file.id)
        assert stored.content == b"clean bytes"
        assert (await store.get_history_entry(entry.id)).file_name == "clean.exe"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,malicious",
        [(TaskStatus.COMPLETED, 4), (TaskStatus.ERROR, 0)],
    )
    async def test_threats_and_errors_do_not_keep_blob(self, store, status, malicious):
        task = make_task("bad.exe", b"bad", status=status, malicious=malicious)

        entry = await store.add_to_history(task)

        assert entry.has_file is False
        assert await store.get_history_file(task.file.id) is None

    @pytest.mark.asyncio
    async def test_find_existing_scan_returns_most_recent(self, store):
        older = make_task("v1.exe", b"same", status=TaskStatus.COMPLETED, sha256="cd" * 32)
        newer = make_task("v2.exe", b"same", status=TaskStatus.REUSED, sha256="cd" * 32)
        await insert_history(store, older, days_ago=2)
        latest = await insert_history(store, newer, days_ago=1)

        match = await store.find_existing_scan("CD" * 32, 4)

        assert match.id == latest.id
        assert match.is_reusable

    @pytest.mark.asyncio
    async def test_find_existing_scan_requires_matching_size(self, store):
        await store.add_to_history(make_task("x.exe", b"four", status=TaskStatus.COMPLETED))

        assert await store.find_existing_scan("ab" * 32, 5) is None
        assert await store.find_existing_scan("ab" * 32, 4) is not None

    @pytest.mark.asyncio
    async def test_entries_without_file_metadata_never_match(self, store):
        reused = make_task("r.exe", b"data", status=TaskStatus.REUSED, sha256=None)
        failed = make_task("e.exe", b"data", status=TaskStatus.ERROR)
        await store.add_to_history(reused)
        await store.add_to_history(failed)

        assert await store.find_existing_scan("ab" * 32, 4) is None

    @pytest.mark.asyncio
    async def test_delete_entries_collects_blobs(self, store):
        entry = await store.add_to_history(make_task("c.exe", b"clean", status=TaskStatus.COMPLETED))

        assert await store.delete_history_entry(entry.id) is True
        assert await store.delete_history_entry(entry.id) is False
        assert (await store.get_storage_stats()).file_count == 0

    @pytest.mark.asyncio
    async def test_clear_history_removes_everything(self, store):
        await store.save_queue([make_task("q.bin", b"q")])
        await store.add_to_history(make_task("h.exe", b"h", status=TaskStatus.COMPLETED))

        await store.clear_history()

        stats = await store.get_storage_stats()
        assert (stats.queue_count, stats.history_count, stats.file_count) == (0, 0, 0)


class TestSearch:

    @pytest.mark.asyncio
    async def test_newest_first(self, store):
        await insert_history(store, make_task("old.txt", b"o", status=TaskStatus.COMPLETED), days_ago=5)
        await insert_history(store, make_task("new.txt", b"n", status=TaskStatus.COMPLETED), days_ago=0)

        page = await store.get_history()

        assert [e.file_name for e in page.entries] == ["new.txt", "old.txt"]
        assert page.total == 2
        assert page.has_more is False

    @pytest.mark.asyncio
    async def test_filters(self, store):
        await insert_history(store, make_task("invoice.pdf", b"1", status=TaskStatus.COMPLETED), days_ago=3)
        await insert_history(
            store, make_task("Trojan.exe", b"22", status=TaskStatus.COMPLETED, malicious=5), days_ago=2
        )
        await insert_history(store, make_task("broken.zip", b"333", status=TaskStatus.ERROR), days_ago=1)
        await insert_history(store, make_task("copy.pdf", b"4444", status=TaskStatus.REUSED), days_ago=0)

        async def names(**criteria):
            page = await store.get_history(SearchOptions(**criteria))
            return sorted(e.file_name for e in page.entries)

        assert await names(query="PDF") == ["copy.pdf", "invoice.pdf"]
        assert await names(status=TaskStatus.ERROR) == ["broken.zip"]
        assert await names(has_threats=True) == ["Trojan.exe"]
        assert await names(has_threats=False) == ["copy.pdf", "invoice.pdf"]
        assert await names(date_from=utcnow() - timedelta(days=1, hours=12)) == ["broken.zip", "copy.pdf"]
        assert await names(date_to=utcnow() - timedelta(days=2, hours=12)) == ["invoice.pdf"]

    @pytest.mark.asyncio
    async def test_pagination(self, store):
        for i in range(5):
            await insert_history(
                store, make_task(f"f{i}.bin", b"x", status=TaskStatus.COMPLETED), days_ago=i
            )

        first = await store.get_history(SearchOptions(limit=2))
        last = await store.get_history(SearchOptions(offset=4, limit=2))

        assert [e.file_name for e in first.entries] == ["f0.bin", "f1.bin"]
        assert first.total == 5
        assert first.has_more is True
        assert [e.file_name for e in last.entries] == ["f4.bin"]
        assert last.has_more is False


class TestMaintenance:

    @pytest.mark.asyncio
    async def test_retention_cleanup_deletes_old_entries_and_blobs(self, store):
        old = make_task("old.exe", b"old", status=TaskStatus.COMPLETED, file_id="old-file")
        recent = make_task("recent.exe", b"recent", status=TaskStatus.COMPLETED, file_id="recent-file")
        await insert_history(store, old, days_ago=40, keep_blob=True)
        await insert_history(store, recent, days_ago=1, keep_blob=True)

        deleted = await store.cleanup_old_history()

        assert deleted == 1
        assert await store.get_history_file("old-file") is None
        assert await store.get_history_file("recent-file") is not None
        settings = await store.get_settings()
        assert utcnow() - settings.last_cleanup < timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_retention_cleanup_keeps_blobs_referenced_by_queue(self, store):
        queued = make_task("shared.exe", b"shared", file_id="shared-file")
        await store.save_queue([queued])
        done = make_task("shared.exe", b"shared", status=TaskStatus.COMPLETED, file_id="shared-file")
        await insert_history(store, done, days_ago=60, keep_blob=True)

        assert await store.cleanup_old_history(retention_days=30) == 1
        assert (await store.load_queue())[0].file.content == b"shared"

    @pytest.mark.asyncio
    async def test_daily_cleanup_runs_from_add_to_history(self, store):
        await insert_history(store, make_task("ancient.exe", b"a", status=TaskStatus.COMPLETED), days_ago=90)
        await store.update_settings(last_cleanup=utcnow() - timedelta(days=2))

        await store.add_to_history(make_task("today.exe", b"t", status=TaskStatus.COMPLETED))

        page = await store.get_history()
        assert [e.file_name for e in page.entries] == ["today.exe"]

    @pytest.mark.asyncio
    async def test_cleanup_not_due_leaves_old_entries(self, store):
        await store.get_settings()
        await insert_history(store, make_task("ancient.exe", b"a", status=TaskStatus.COMPLETED), days_ago=90)

        await store.add_to_history(make_task("today.exe", b"t", status=TaskStatus.COMPLETED))

        assert (await store.get_history()).total == 2

    @pytest.mark.asyncio
    async def test_invalid_entries_are_pruned(self, store):
        await store.add_to_history(make_task("nometa.exe", b"n", status=TaskStatus.COMPLETED, sha256=None))
        await store.add_to_history(make_task("failed.exe", b"f", status=TaskStatus.ERROR))
        await store.add_to_history(make_task("good.exe", b"g", status=TaskStatus.COMPLETED))

        assert await store.cleanup_invalid_history_entries() == 1

        names = sorted(e.file_name for e in (await store.get_history()).entries)
        assert names == ["failed.exe", "good.exe"]


class TestSettings:

    @pytest.mark.asyncio
    async def test_defaults_created_on_first_access(self, store):
        settings = await store.get_settings()

        assert settings.history_retention_days == 30
        assert settings.auto_start_scanning is True

    @pytest.mark.asyncio
    async def test_update_and_reset(self, store):
        updated = await store.update_settings(history_retention_days=7, auto_start_scanning=False)
        assert updated.history_retention_days == 7
        assert (await store.get_settings()).auto_start_scanning is False

        reset = await store.reset_settings()
        assert reset.history_retention_days == 30
        assert (await store.get_settings()).auto_start_scanning is True

    @pytest.mark.asyncio
    async def test_invalid_updates_rejected(self, store):
        with pytest.raises(ValueError):
            await store.update_settings(history_retention_days=0)
        with pytest.raises(ValueError):
            await store.update_settings(theme="dark")


class TestUtilities:

    @pytest.mark.asyncio
    async def test_storage_stats(self, store):
        await store.save_queue([make_task("q.bin", b"12345")])
        await store.add_to_history(make_task("h.exe", b"123", status=TaskStatus.COMPLETED))

        stats = await store.get_storage_stats()

        assert stats.queue_count == 1
        assert stats.history_count == 1
        assert stats.file_count == 2
        assert stats.total_file_bytes == 8

    @pytest.mark.asyncio
    async def test_export_data(self, store):
        queued = make_task("q.bin", b"q")
        await store.save_queue([queued])
        await store.add_to_history(make_task("h.exe", b"h", status=TaskStatus.COMPLETED))

        data = await store.export_data()

        assert [t["id"] for t in data["queue"]] == [queued.id]
        assert data["history"][0]["file_name"] == "h.exe"
        assert data["settings"]["history_retention_days"] == 30
        assert "export_date" in data

    @pytest.mark.asyncio
    async def test_operations_require_initialization(self, persistence_config):
        store = PersistenceStore(persistence_config)

        assert store.is_initialized is False
        with pytest.raises(PersistenceError):
            await store.load_queue()

    @pytest.mark.asyncio
    async def test_unreachable_database_raises_persistence_error(self, tmp_path):
        missing_dir = tmp_path / "does-not-exist" / "scanner.db"
        store = PersistenceStore(PersistenceConfig(database_url=f"sqlite+aiosqlite:///{missing_dir}"))

        with pytest.raises(PersistenceError):
            await store.initialize()
