"""
Store 测试

InMemoryStore semantics and JsonFileStore durability (reload, torn writes).
"""

import pytest

from conductor.errors import (
    CursorConflict,
    FailureInfo,
    FailureKind,
    InvalidTaskTransition,
    StoreError,
    TaskNotFound,
)
from conductor.models import Message, Role, Task, TaskStatus
from conductor.storage import InMemoryStore, JsonFileStore


def assistant(text: str) -> Message:
    return Message(agent_id="alpha", role=Role.ASSISTANT, content=text)


# ============================================
# Messages and cursor
# ============================================

class TestMessages:
    """消息与游标"""

    @pytest.mark.asyncio
    async def test_positions_are_gap_free_and_per_agent(self, store):
        a1 = await store.append_message("alpha", "one")
        b1 = await store.append_message("beta", "uno")
        a2 = await store.append_message("alpha", "two")

        assert (a1.position, a2.position) == (1, 2)
        assert b1.position == 1
        assert await store.highest_position("alpha") == 2

    @pytest.mark.asyncio
    async def test_read_since_cursor(self, store):
        for text in ("a", "b", "c"):
            await store.append_message("alpha", text)

        pending = await store.read_messages_since("alpha", 1)

        assert [m.content for m in pending] == ["b", "c"]
        assert await store.read_messages_since("ghost", 0) == []

    @pytest.mark.asyncio
    async def test_outputs_cannot_be_appended_directly(self, store):
        with pytest.raises(StoreError):
            await store.append_message("alpha", "hi", role=Role.ASSISTANT)

    @pytest.mark.asyncio
    async def test_default_cursor(self, store):
        cursor = await store.get_cursor("alpha")
        assert cursor.position == 0
        assert cursor.session_id is None

    @pytest.mark.asyncio
    async def test_commit_assigns_positions_from_shared_counter(self, store):
        await store.append_message("alpha", "q1")
        await store.append_message("alpha", "q2")

        state = await store.commit_cursor("alpha", 2, "sess_1", [assistant("a")])
        follow_up = await store.append_message("alpha", "q3")

        assert state.position == 2
        assert state.session_id == "sess_1"
        assert follow_up.position == 4

        history = await store.read_history("alpha")
        assert [(m.role, m.position) for m in history] == [
            (Role.USER, 1), (Role.USER, 2), (Role.ASSISTANT, 3),
        ]
        assert history[-1].reply_to == 2

    @pytest.mark.asyncio
    async def test_outputs_not_pending_input(self, store):
        await store.append_message("alpha", "q1")
        await store.commit_cursor("alpha", 1, None, [assistant("a1")])

        assert await store.read_messages_since("alpha", 1) == []

    @pytest.mark.asyncio
    async def test_cursor_never_regresses(self, store):
        await store.append_message("alpha", "q1")
        await store.append_message("alpha", "q2")
        await store.commit_cursor("alpha", 2, None)

        with pytest.raises(CursorConflict):
            await store.commit_cursor("alpha", 1, None)

    @pytest.mark.asyncio
    async def test_cursor_cannot_pass_highest_input(self, store):
        await store.append_message("alpha", "q1")

        with pytest.raises(CursorConflict):
            await store.commit_cursor("alpha", 5, None)

    @pytest.mark.asyncio
    async def test_returned_messages_are_copies(self, store):
        await store.append_message("alpha", "original")

        pending = await store.read_messages_since("alpha", 0)
        pending[0].content = "changed"

        again = await store.read_messages_since("alpha", 0)
        assert again[0].content == "original"

    @pytest.mark.asyncio
    async def test_withdrawn_message_is_never_read(self, store):
        await store.append_message("alpha", "cancelled work")
        await store.append_message("alpha", "later")

        assert await store.withdraw_message("alpha", 1)

        pending = await store.read_messages_since("alpha", 0)
        assert [m.content for m in pending] == ["later"]

        await store.commit_cursor("alpha", 2, None, [assistant("done")])
        history = await store.read_history("alpha")
        assert [m.content for m in history] == ["later", "done"]

    @pytest.mark.asyncio
    async def test_withdraw_only_pending_input(self, store):
        await store.append_message("alpha", "q1")
        await store.append_message("alpha", "q2")
        await store.commit_cursor("alpha", 1, None, [assistant("a1")])

        assert not await store.withdraw_message("alpha", 1)
        assert not await store.withdraw_message("alpha", 3)
        assert not await store.withdraw_message("alpha", 9)
        assert not await store.withdraw_message("ghost", 1)
        assert await store.withdraw_message("alpha", 2)
        assert not await store.withdraw_message("alpha", 2)

        assert [m.content for m in await store.read_history("alpha")] == ["q1", "a1"]


# ============================================
# Tasks
# ============================================

class TestTasks:
    """任务状态机"""

    @pytest.mark.asyncio
    async def test_tree(self, store):
        await store.create_task(Task(task_id="root", objective="report"))
        await store.create_task(Task(task_id="c1", objective="research", parent_id="root"))
        await store.create_task(Task(task_id="c2", objective="write", parent_id="root"))

        tree = await store.get_task_tree("root")

        assert [n.task.task_id for n in tree.walk()] == ["root", "c1", "c2"]
        assert [t.task_id for t in await store.list_children("root")] == ["c1", "c2"]

    @pytest.mark.asyncio
    async def test_unknown_parent_and_task(self, store):
        with pytest.raises(TaskNotFound):
            await store.create_task(Task(task_id="c1", objective="x", parent_id="nope"))
        with pytest.raises(TaskNotFound):
            await store.get_task("nope")

    @pytest.mark.asyncio
    async def test_duplicate_task_id(self, store):
        await store.create_task(Task(task_id="t", objective="x"))
        with pytest.raises(StoreError):
            await store.create_task(Task(task_id="t", objective="y"))

    @pytest.mark.asyncio
    async def test_valid_transitions(self, store):
        await store.create_task(Task(task_id="t", objective="x"))

        running = await store.update_task_status("t", TaskStatus.RUNNING)
        done = await store.update_task_status("t", TaskStatus.SUCCEEDED, result="42")

        assert running.started_at is not None
        assert done.status == TaskStatus.SUCCEEDED
        assert done.result == "42"
        assert done.completed_at is not None

    @pytest.mark.asyncio
    async def test_terminal_states_are_final(self, store):
        await store.create_task(Task(task_id="t", objective="x"))
        await store.update_task_status("t", TaskStatus.CANCELLED)

        with pytest.raises(InvalidTaskTransition):
            await store.update_task_status("t", TaskStatus.RUNNING)

    @pytest.mark.asyncio
    async def test_pending_cannot_succeed_directly(self, store):
        await store.create_task(Task(task_id="t", objective="x"))

        with pytest.raises(InvalidTaskTransition):
            await store.update_task_status("t", TaskStatus.SUCCEEDED)

    @pytest.mark.asyncio
    async def test_parent_cannot_succeed_with_active_children(self, store):
        await store.create_task(Task(task_id="root", objective="x"))
        await store.create_task(Task(task_id="c1", objective="y", parent_id="root"))
        await store.update_task_status("root", TaskStatus.RUNNING)

        with pytest.raises(InvalidTaskTransition, match="children still active"):
            await store.update_task_status("root", TaskStatus.SUCCEEDED)

        await store.update_task_status("c1", TaskStatus.CANCELLED)
        await store.update_task_status("root", TaskStatus.SUCCEEDED, result="partial")

    @pytest.mark.asyncio
    async def test_failure_recorded(self, store):
        await store.create_task(Task(task_id="t", objective="x"))
        await store.update_task_status("t", TaskStatus.RUNNING)

        failure = FailureInfo.from_kind(FailureKind.AUTH_FAILURE, "bad key")
        task = await store.update_task_status("t", TaskStatus.FAILED, error=failure)

        assert task.error.kind == FailureKind.AUTH_FAILURE
        assert not task.error.retryable


# ============================================
# JSON file store
# ============================================

class TestJsonFileStore:
    """持久化测试"""

    @pytest.mark.asyncio
    async def test_reload_restores_log_cursor_and_tasks(self, tmp_path):
        first = JsonFileStore(tmp_path)
        await first.append_message("alpha", "q1")
        await first.commit_cursor("alpha", 1, "sess_9", [assistant("a1")])
        await first.append_message("alpha", "q2")
        await first.create_task(Task(task_id="root", objective="x"))
        await first.update_task_status("root", TaskStatus.RUNNING)

        second = JsonFileStore(tmp_path)

        cursor = await second.get_cursor("alpha")
        assert cursor.position == 1
        assert cursor.session_id == "sess_9"
        assert [m.content for m in await second.read_messages_since("alpha", 1)] == ["q2"]
        assert [m.content for m in await second.read_history("alpha")] == ["q1", "a1"]
        assert (await second.get_task("root")).status == TaskStatus.RUNNING

        appended = await second.append_message("alpha", "q3")
        assert appended.position == 4

    @pytest.mark.asyncio
    async def test_torn_trailing_line_dropped(self, tmp_path):
        first = JsonFileStore(tmp_path)
        await first.append_message("alpha", "kept")

        log_path = first._agent_dir("alpha") / JsonFileStore.MESSAGES_FILE
        with open(log_path, "a", encoding="utf-8") as f:
            f.write('{"agent_id": "alpha", "role": "us')

        second = JsonFileStore(tmp_path)

        pending = await second.read_messages_since("alpha", 0)
        assert [m.content for m in pending] == ["kept"]
        assert (await second.append_message("alpha", "next")).position == 2

    @pytest.mark.asyncio
    async def test_agent_ids_are_path_safe(self, tmp_path):
        store = JsonFileStore(tmp_path)
        await store.append_message("research:task_1/2", "hi")

        reloaded = JsonFileStore(tmp_path)
        assert len(await reloaded.read_messages_since("research:task_1/2", 0)) == 1

    @pytest.mark.asyncio
    async def test_withdrawal_survives_reload(self, tmp_path):
        first = JsonFileStore(tmp_path)
        await first.append_message("alpha", "cancelled work")
        await first.append_message("alpha", "kept")
        await first.withdraw_message("alpha", 1)

        second = JsonFileStore(tmp_path)

        assert [m.content for m in await second.read_messages_since("alpha", 0)] == ["kept"]
        assert (await second.append_message("alpha", "next")).position == 3

    @pytest.mark.asyncio
    async def test_failed_write_leaves_memory_untouched(self, tmp_path, monkeypatch):
        store = JsonFileStore(tmp_path)
        await store.append_message("alpha", "q1")

        def broken(path, data):
            raise OSError("disk full")

        monkeypatch.setattr("conductor.storage.json_store._atomic_write_json", broken)

        with pytest.raises(StoreError):
            await store.commit_cursor("alpha", 1, "sess", [assistant("a1")])

        assert (await store.get_cursor("alpha")).position == 0
        assert await store.highest_position("alpha") == 1


class TestInMemoryStoreStats:

    @pytest.mark.asyncio
    async def test_stats(self):
        store = InMemoryStore()
        await store.append_message("alpha", "x")
        await store.create_task(Task(task_id="t", objective="x"))

        assert store.stats() == {"agents": 1, "messages": 1, "tasks": 1}
