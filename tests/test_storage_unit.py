"""Unit tests for the in-memory store.

Tests for:
- User and credential records
- Refresh-token digest bookkeeping
- Task CRUD, filtering, sorting and paging
- JSON state persistence
"""

import time
from datetime import datetime, timedelta, timezone

import pytest

from taskvault.storage.errors import ConstraintViolation, InvalidIdentifier
from taskvault.storage.memory import MemoryStore
from taskvault.storage.models import TaskQuery, TaskSortField


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def test_user(memory_store):
    return memory_store.create_user("Ann", "ann@example.com", "hash-1")


def _now():
    return datetime.now(timezone.utc)


class TestUsers:
    def test_create_user_normalizes_email(self, memory_store):
        user = memory_store.create_user("Ann", "  Ann@Example.COM ", "hash-1")

        assert user.email == "ann@example.com"
        assert memory_store.get_user_by_email("ANN@example.com").id == user.id

    def test_duplicate_email_raises_constraint_violation(self, memory_store, test_user):
        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_user("Ann 2", "ann@example.com", "hash-2")
        assert exc_info.value.detail == {"field": "email"}

    def test_user_reads_do_not_carry_secrets(self, memory_store, test_user):
        user = memory_store.get_user(test_user.id)

        assert not hasattr(user, "password_hash")
        assert memory_store.get_credential(test_user.id).password_hash == "hash-1"

    def test_unknown_user_lookups_return_none(self, memory_store):
        assert memory_store.get_user("missing") is None
        assert memory_store.get_user_by_email("missing@example.com") is None
        assert memory_store.get_credential("missing") is None


class TestRefreshDigests:
    def test_find_requires_unexpired_match(self, memory_store, test_user):
        memory_store.set_refresh_token(test_user.id, "digest-a", _now() + timedelta(days=1))

        assert memory_store.find_user_by_refresh_token("digest-a", _now()).id == test_user.id
        assert memory_store.find_user_by_refresh_token("digest-b", _now()) is None
        assert (
            memory_store.find_user_by_refresh_token("digest-a", _now() + timedelta(days=2))
            is None
        )

    def test_set_replaces_previous_digest(self, memory_store, test_user):
        memory_store.set_refresh_token(test_user.id, "digest-a", _now() + timedelta(days=1))
        memory_store.set_refresh_token(test_user.id, "digest-b", _now() + timedelta(days=1))

        assert memory_store.find_user_by_refresh_token("digest-a", _now()) is None
        assert memory_store.find_user_by_refresh_token("digest-b", _now()) is not None

    def test_rotate_is_compare_and_swap(self, memory_store, test_user):
        expires = _now() + timedelta(days=1)
        memory_store.set_refresh_token(test_user.id, "digest-a", expires)

        assert memory_store.rotate_refresh_token(test_user.id, "digest-a", "digest-b", expires, _now())
        assert not memory_store.rotate_refresh_token(test_user.id, "digest-a", "digest-c", expires, _now())
        assert memory_store.get_credential(test_user.id).refresh_token_hash == "digest-b"

    def test_clear_is_idempotent(self, memory_store, test_user):
        memory_store.set_refresh_token(test_user.id, "digest-a", _now() + timedelta(days=1))

        memory_store.clear_refresh_token(test_user.id)
        memory_store.clear_refresh_token(test_user.id)

        credential = memory_store.get_credential(test_user.id)
        assert credential.refresh_token_hash is None
        assert credential.refresh_token_expires_at is None


class TestTasks:
    def test_create_and_get(self, memory_store, test_user):
        task = memory_store.create_task(test_user.id, title="Buy milk")

        fetched = memory_store.get_task(task.id)
        assert fetched.title == "Buy milk"
        assert fetched.user == test_user.id
        assert fetched.completed is False
        assert fetched.priority == "medium"
        assert fetched.created_at == fetched.updated_at

    def test_malformed_id_raises_invalid_identifier(self, memory_store):
        with pytest.raises(InvalidIdentifier):
            memory_store.get_task("not-a-uuid")

    def test_update_moves_updated_at(self, memory_store, test_user):
        task = memory_store.create_task(test_user.id, title="Buy milk")
        time.sleep(0.002)

        updated = memory_store.update_task(task.id, {"completed": True})

        assert updated.completed is True
        assert updated.updated_at > task.updated_at
        assert updated.created_at == task.created_at

    def test_update_rejects_immutable_fields(self, memory_store, test_user):
        task = memory_store.create_task(test_user.id, title="Buy milk")

        with pytest.raises(ValueError):
            memory_store.update_task(task.id, {"user": "someone-else"})

    def test_delete_is_final(self, memory_store, test_user):
        task = memory_store.create_task(test_user.id, title="Buy milk")

        assert memory_store.delete_task(task.id) is True
        assert memory_store.get_task(task.id) is None
        assert memory_store.delete_task(task.id) is False

    def test_returned_objects_are_copies(self, memory_store, test_user):
        task = memory_store.create_task(test_user.id, title="Buy milk")
        task.title = "mutated"

        assert memory_store.get_task(task.id).title == "Buy milk"


class TestListTasks:
    @pytest.fixture
    def seeded(self, memory_store, test_user):
        other = memory_store.create_user("Bob", "bob@example.com", "hash-2")
        specs = [
            ("alpha", "high", False, 3),
            ("bravo", "low", True, None),
            ("charlie", "medium", False, 1),
            ("delta", "high", True, 2),
        ]
        for title, priority, completed, due_in in specs:
            memory_store.create_task(
                test_user.id,
                title=title,
                priority=priority,
                completed=completed,
                due_date=_now() + timedelta(days=due_in) if due_in else None,
            )
            time.sleep(0.002)
        memory_store.create_task(other.id, title="bob's task")
        return test_user

    def test_scoped_to_owner_newest_first(self, memory_store, seeded):
        page = memory_store.list_tasks(TaskQuery(user_id=seeded.id))

        assert page.total == 4
        assert [t.title for t in page.items] == ["delta", "charlie", "bravo", "alpha"]

    def test_filters(self, memory_store, seeded):
        done = memory_store.list_tasks(TaskQuery(user_id=seeded.id, completed=True))
        high = memory_store.list_tasks(TaskQuery(user_id=seeded.id, priority="high"))

        assert {t.title for t in done.items} == {"bravo", "delta"}
        assert {t.title for t in high.items} == {"alpha", "delta"}

    def test_sort_by_priority_uses_rank(self, memory_store, seeded):
        page = memory_store.list_tasks(
            TaskQuery(user_id=seeded.id, sort=TaskSortField.PRIORITY, descending=False)
        )

        assert [t.priority for t in page.items] == ["low", "medium", "high", "high"]

    def test_missing_due_dates_sort_last(self, memory_store, seeded):
        page = memory_store.list_tasks(
            TaskQuery(user_id=seeded.id, sort=TaskSortField.DUE_DATE, descending=False)
        )

        assert [t.title for t in page.items] == ["charlie", "delta", "alpha", "bravo"]

    def test_pagination(self, memory_store, seeded):
        page = memory_store.list_tasks(TaskQuery(user_id=seeded.id, page=2, limit=3))

        assert page.total == 4
        assert page.total_pages == 2
        assert [t.title for t in page.items] == ["alpha"]

    def test_page_past_the_end_is_empty(self, memory_store, seeded):
        page = memory_store.list_tasks(TaskQuery(user_id=seeded.id, page=5, limit=3))

        assert page.items == []
        assert page.total == 4


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("Ann", "ann@example.com", "hash-1")
        store.set_refresh_token(user.id, "digest-a", _now() + timedelta(days=1))
        task = store.create_task(user.id, title="Buy milk", due_date=_now())

        reloaded = MemoryStore(fs_root=str(tmp_path))

        assert reloaded.get_user(user.id).email == "ann@example.com"
        assert reloaded.find_user_by_refresh_token("digest-a", _now()).id == user.id
        restored = reloaded.get_task(task.id)
        assert restored.title == "Buy milk"
        assert restored.due_date.tzinfo is not None
        assert (tmp_path / "state" / "memory_store.json").exists()

    def test_without_fs_root_nothing_is_written(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        store = MemoryStore()
        store.create_user("Ann", "ann@example.com", "hash-1")

        assert list(tmp_path.iterdir()) == []

    def test_failed_snapshot_rolls_back_the_write(self, tmp_path, monkeypatch):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("Ann", "ann@example.com", "hash-1")
        store.set_refresh_token(user.id, "digest-a", _now() + timedelta(days=1))
        task = store.create_task(user.id, title="Buy milk")

        def _disk_full():
            raise RuntimeError("failed to persist in-memory state: disk full")

        monkeypatch.setattr(store, "_persist_state", _disk_full)

        with pytest.raises(RuntimeError):
            store.update_task(task.id, {"title": "Buy bread", "completed": True})
        with pytest.raises(RuntimeError):
            store.delete_task(task.id)
        with pytest.raises(RuntimeError):
            store.rotate_refresh_token(
                user.id, "digest-a", "digest-b", _now() + timedelta(days=1), _now()
            )
        with pytest.raises(RuntimeError):
            store.create_user("Bob", "bob@example.com", "hash-2")

        unchanged = store.get_task(task.id)
        assert unchanged.title == "Buy milk"
        assert unchanged.completed is False
        assert unchanged.updated_at == task.updated_at
        assert store.get_credential(user.id).refresh_token_hash == "digest-a"
        assert store.get_user_by_email("bob@example.com") is None

        reloaded = MemoryStore(fs_root=str(tmp_path))
        assert reloaded.get_task(task.id).title == "Buy milk"
