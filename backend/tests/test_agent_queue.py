"""
Agent Queue 测试

Per-agent serialization, debounced follow-up runs, cross-agent parallelism,
completion signals and cancellation.
"""

import asyncio

import pytest

from conftest import ScriptedStreamClient, error_turn, make_loop, wait_until

from conductor.core.agent_queue import AgentQueue, AgentState
from conductor.errors import FailureKind
from conductor.models import Role, RunResult, RunStatus


def make_queue(store, registry, directory, client, **kwargs):
    loop = make_loop(store, registry, client, directory, **kwargs)
    return AgentQueue(loop.run_agent)


async def post(store, queue, agent_id, content):
    """Append + watch + enqueue, the way callers submit work"""
    message = await store.append_message(agent_id, content)
    done = queue.watch(agent_id, message.position)
    queue.enqueue(agent_id)
    return message, done


# ============================================
# Serialization and debouncing
# ============================================

class TestPerAgentSerialization:
    """同一 agent 串行"""

    @pytest.mark.asyncio
    async def test_single_message_runs_once(self, store, registry, directory):
        client = ScriptedStreamClient()
        queue = make_queue(store, registry, directory, client)

        message, done = await post(store, queue, "alpha", "hello")
        result = await asyncio.wait_for(done, timeout=2.0)

        assert result.status == RunStatus.SUCCEEDED
        assert result.cursor == message.position
        assert queue.state("alpha") == AgentState.IDLE

    @pytest.mark.asyncio
    async def test_never_two_runs_for_one_agent(self, store, registry, directory):
        client = ScriptedStreamClient(delay=0.005)
        queue = make_queue(store, registry, directory, client)

        for i in range(8):
            await post(store, queue, "alpha", f"message {i}")
            await asyncio.sleep(0.003)
        await asyncio.wait_for(queue.wait_idle("alpha"), timeout=5.0)

        assert client.max_active["alpha"] == 1
        assert len(client.calls_for("alpha")) >= 2

    @pytest.mark.asyncio
    async def test_enqueues_during_run_coalesce_into_one_follow_up(self, store, registry, directory):
        gate = asyncio.Event()
        client = ScriptedStreamClient(gate=gate)
        queue = make_queue(store, registry, directory, client)

        await post(store, queue, "alpha", "first")
        await asyncio.wait_for(client.started.wait(), timeout=1.0)

        for text in ("second", "third", "fourth"):
            await post(store, queue, "alpha", text)
        assert queue.has_pending_work("alpha")

        gate.set()
        await asyncio.wait_for(queue.wait_idle("alpha"), timeout=2.0)

        calls = client.calls_for("alpha")
        assert len(calls) == 2
        follow_up = [m.content for m in calls[1].messages if m.role == Role.USER]
        assert follow_up[-3:] == ["second", "third", "fourth"]

        stats = queue.stats()
        assert stats["runs"] == 2
        assert stats["coalesced"] == 2
        assert stats["runs_by_agent"] == {"alpha": 2}

    @pytest.mark.asyncio
    async def test_follow_up_advances_cursor_past_mid_run_messages(self, store, registry, directory):
        client = ScriptedStreamClient()
        queue = make_queue(store, registry, directory, client)

        for i in range(10):
            await store.append_message("alpha", f"backlog {i}")
        queue.enqueue("alpha")
        await asyncio.wait_for(queue.wait_idle("alpha"), timeout=2.0)
        assert (await store.get_cursor("alpha")).position == 10

        gate = asyncio.Event()
        client.gate = gate
        client.started.clear()

        first, first_done = await post(store, queue, "alpha", "new 1")
        await asyncio.wait_for(client.started.wait(), timeout=1.0)
        await post(store, queue, "alpha", "new 2")
        last, last_done = await post(store, queue, "alpha", "new 3")

        gate.set()
        first_result = await asyncio.wait_for(first_done, timeout=2.0)
        last_result = await asyncio.wait_for(last_done, timeout=2.0)

        # the in-flight run only covered what it read; the follow-up covers the rest
        assert first_result.cursor == first.position
        assert last_result.cursor == last.position
        assert (await store.get_cursor("alpha")).position == last.position
        assert await store.read_messages_since("alpha", last.position) == []

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_no_message_left_behind(self, store, registry, directory):
        client = ScriptedStreamClient(delay=0.002)
        queue = make_queue(store, registry, directory, client)

        waiters = []
        for i in range(25):
            message, done = await post(store, queue, "alpha", f"m{i}")
            waiters.append((message.position, done))
            if i % 3 == 0:
                await asyncio.sleep(0.004)

        results = await asyncio.wait_for(
            asyncio.gather(*(done for _, done in waiters)), timeout=5.0,
        )
        await asyncio.wait_for(queue.wait_idle("alpha"), timeout=2.0)

        for (position, _), result in zip(waiters, results):
            assert result.status == RunStatus.SUCCEEDED
            assert result.cursor >= position
        highest_input = waiters[-1][0]
        assert (await store.get_cursor("alpha")).position == highest_input


# ============================================
# Parallelism
# ============================================

class TestCrossAgentParallelism:
    """不同 agent 并行"""

    @pytest.mark.asyncio
    async def test_two_agents_stream_at_the_same_time(self, store, registry, directory):
        gate = asyncio.Event()
        client = ScriptedStreamClient(gate=gate)
        queue = make_queue(store, registry, directory, client)

        _, alpha_done = await post(store, queue, "alpha", "hi alpha")
        _, beta_done = await post(store, queue, "beta", "hi beta")

        await wait_until(lambda: client.active.get("alpha") == 1 and client.active.get("beta") == 1)
        assert queue.running_count() == 2

        gate.set()
        results = await asyncio.wait_for(asyncio.gather(alpha_done, beta_done), timeout=2.0)

        assert all(r.succeeded for r in results)
        assert client.max_active_total == 2
        assert queue.stats()["max_running"] == 2

    @pytest.mark.asyncio
    async def test_slow_agent_does_not_block_others(self, store, registry, directory):
        gate = asyncio.Event()

        class SlowAlpha(ScriptedStreamClient):
            async def stream_message(self, model, system_prompt, messages, tools, *, max_tokens=None):
                if messages[-1].agent_id == "alpha":
                    await gate.wait()
                async for event in super().stream_message(
                    model, system_prompt, messages, tools, max_tokens=max_tokens,
                ):
                    yield event

        client = SlowAlpha()
        queue = make_queue(store, registry, directory, client)

        _, alpha_done = await post(store, queue, "alpha", "slow")
        _, beta_done = await post(store, queue, "beta", "fast")

        beta_result = await asyncio.wait_for(beta_done, timeout=2.0)
        assert beta_result.succeeded
        assert not alpha_done.done()

        gate.set()
        assert (await asyncio.wait_for(alpha_done, timeout=2.0)).succeeded


# ============================================
# Completion signals
# ============================================

class TestCompletionSignals:
    """完成信号"""

    @pytest.mark.asyncio
    async def test_watch_after_completion_resolves_immediately(self, store, registry, directory):
        queue = make_queue(store, registry, directory, ScriptedStreamClient())

        message, done = await post(store, queue, "alpha", "hello")
        await done

        again = queue.watch("alpha", message.position)
        assert again.done()
        assert again.result().cursor == message.position

    @pytest.mark.asyncio
    async def test_failed_run_reports_to_its_waiters(self, store, registry, directory):
        client = ScriptedStreamClient([error_turn(FailureKind.AUTH_FAILURE, "bad key")])
        queue = make_queue(store, registry, directory, client)

        _, done = await post(store, queue, "alpha", "hello")
        result = await asyncio.wait_for(done, timeout=2.0)

        assert result.status == RunStatus.FAILED
        assert result.failure.kind == FailureKind.AUTH_FAILURE
        assert queue.last_result("alpha") is result
        assert queue.stats()["failed"] == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_from_run_becomes_internal_failure(self):
        async def exploding_run(agent_id):
            raise RuntimeError("boom")

        queue = AgentQueue(exploding_run)
        done = queue.watch("alpha", 1)
        queue.enqueue("alpha")

        result = await asyncio.wait_for(done, timeout=1.0)

        assert result.status == RunStatus.FAILED
        assert result.failure.kind == FailureKind.INTERNAL
        assert queue.state("alpha") == AgentState.IDLE

    @pytest.mark.asyncio
    async def test_wait_idle_on_unknown_agent_returns(self):
        queue = AgentQueue(lambda agent_id: None)
        await asyncio.wait_for(queue.wait_idle("nobody"), timeout=0.5)

    @pytest.mark.asyncio
    async def test_enqueue_threadsafe(self):
        runs = []

        async def run(agent_id):
            runs.append(agent_id)
            return RunResult(agent_id=agent_id, status=RunStatus.NOOP, cursor=0)

        queue = AgentQueue(run, loop=asyncio.get_running_loop())
        await asyncio.to_thread(queue.enqueue_threadsafe, "alpha")

        await wait_until(lambda: runs == ["alpha"] and queue.state("alpha") == AgentState.IDLE)


# ============================================
# Cancellation and shutdown
# ============================================

class TestCancellation:
    """取消与关闭"""

    @pytest.mark.asyncio
    async def test_cancel_in_flight_run(self, store, registry, directory):
        gate = asyncio.Event()
        client = ScriptedStreamClient(gate=gate)
        queue = make_queue(store, registry, directory, client)

        message, done = await post(store, queue, "alpha", "hello")
        await asyncio.wait_for(client.started.wait(), timeout=1.0)

        assert queue.cancel("alpha")
        result = await asyncio.wait_for(done, timeout=1.0)

        assert result.status == RunStatus.CANCELLED
        await wait_until(lambda: queue.state("alpha") == AgentState.IDLE)
        assert (await store.get_cursor("alpha")).position == 0

        # the message is still pending and is answered by the next run
        gate.set()
        retry_done = queue.watch("alpha", message.position)
        queue.enqueue("alpha")
        assert (await asyncio.wait_for(retry_done, timeout=1.0)).cursor == message.position

    @pytest.mark.asyncio
    async def test_cancel_drops_pending_follow_up(self, store, registry, directory):
        gate = asyncio.Event()
        client = ScriptedStreamClient(gate=gate)
        queue = make_queue(store, registry, directory, client)

        await post(store, queue, "alpha", "first")
        await asyncio.wait_for(client.started.wait(), timeout=1.0)
        await post(store, queue, "alpha", "second")
        assert queue.has_pending_work("alpha")

        queue.cancel("alpha")
        await asyncio.wait_for(queue.wait_idle("alpha"), timeout=1.0)

        assert len(client.calls) == 1
        assert queue.stats()["cancelled"] == 1

    @pytest.mark.asyncio
    async def test_cancel_positions_keeps_other_waiters(self, store, registry, directory):
        gate = asyncio.Event()
        client = ScriptedStreamClient(gate=gate)
        queue = make_queue(store, registry, directory, client)

        first, first_done = await post(store, queue, "alpha", "first")
        await asyncio.wait_for(client.started.wait(), timeout=1.0)
        second, second_done = await post(store, queue, "alpha", "second")
        await store.withdraw_message("alpha", first.position)

        assert queue.cancel("alpha", positions=[first.position])
        assert (await asyncio.wait_for(first_done, timeout=1.0)).status == RunStatus.CANCELLED
        assert not second_done.done()

        gate.set()
        result = await asyncio.wait_for(second_done, timeout=1.0)

        assert result.succeeded
        assert result.cursor == second.position
        assert len(client.calls) == 2
        assert [m.content for m in client.calls[-1].messages] == ["second"]
        assert queue.stats()["cancelled"] == 1

    @pytest.mark.asyncio
    async def test_cancel_positions_before_run_starts(self, store, registry, directory):
        client = ScriptedStreamClient()
        queue = make_queue(store, registry, directory, client)

        await store.append_message("alpha", "dropped")
        await store.append_message("alpha", "kept")
        dropped = queue.watch("alpha", 1)
        kept = queue.watch("alpha", 2)
        queue.enqueue("alpha")
        await store.withdraw_message("alpha", 1)
        queue.cancel("alpha", positions=[1])

        assert (await asyncio.wait_for(dropped, timeout=1.0)).status == RunStatus.CANCELLED
        result = await asyncio.wait_for(kept, timeout=1.0)

        assert result.succeeded
        assert result.cursor == 2
        assert [m.content for m in client.calls[-1].messages] == ["kept"]

    @pytest.mark.asyncio
    async def test_cancel_unknown_position(self, store, registry, directory):
        gate = asyncio.Event()
        client = ScriptedStreamClient(gate=gate)
        queue = make_queue(store, registry, directory, client)

        _, done = await post(store, queue, "alpha", "hello")
        await asyncio.wait_for(client.started.wait(), timeout=1.0)

        assert not queue.cancel("alpha", positions=[7])
        gate.set()
        assert (await asyncio.wait_for(done, timeout=1.0)).succeeded
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_cancel_before_run_starts(self, store, registry, directory):
        client = ScriptedStreamClient()
        queue = make_queue(store, registry, directory, client)

        await store.append_message("alpha", "hello")
        done = queue.watch("alpha", 1)
        queue.enqueue("alpha")
        queue.cancel("alpha")

        result = await asyncio.wait_for(done, timeout=1.0)

        assert result.status == RunStatus.CANCELLED
        await wait_until(lambda: queue.state("alpha") == AgentState.IDLE)
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_cancel_idle_agent_is_noop(self):
        queue = AgentQueue(lambda agent_id: None)
        assert not queue.cancel("alpha")

    @pytest.mark.asyncio
    async def test_cancelling_one_agent_leaves_others_running(self, store, registry, directory):
        gate = asyncio.Event()
        client = ScriptedStreamClient(gate=gate)
        queue = make_queue(store, registry, directory, client)

        _, alpha_done = await post(store, queue, "alpha", "a")
        _, beta_done = await post(store, queue, "beta", "b")
        await wait_until(lambda: len(client.calls) == 2)

        queue.cancel("alpha")
        gate.set()

        assert (await asyncio.wait_for(alpha_done, timeout=1.0)).status == RunStatus.CANCELLED
        assert (await asyncio.wait_for(beta_done, timeout=1.0)).succeeded

    @pytest.mark.asyncio
    async def test_shutdown(self, store, registry, directory):
        gate = asyncio.Event()
        client = ScriptedStreamClient(gate=gate)
        queue = make_queue(store, registry, directory, client)

        _, done = await post(store, queue, "alpha", "hello")
        await asyncio.wait_for(client.started.wait(), timeout=1.0)

        await asyncio.wait_for(queue.shutdown(), timeout=1.0)

        assert done.result().status == RunStatus.CANCELLED
        assert queue.running_count() == 0
        with pytest.raises(RuntimeError):
            queue.enqueue("alpha")
