"""Tests for ConversationHost: epochs, snapshots, resume, isolation, thread-safe signals."""

import asyncio
import threading

import pytest

from continuum.engine.capabilities import CapabilityRegistry
from continuum.engine.context import render_answer, render_user_turn
from continuum.engine.errors import ConversationStateError, OperationFailedError
from continuum.engine.inbox import MessageInbox
from continuum.engine.orchestrator import Phase
from continuum.engine.schemas import ConversationSnapshot, EpochInfo, PendingTurn, Usage
from continuum.runtime.host import ConversationHost, OperationCountAdvisor, _Conversation
from continuum.runtime.snapshots import FileSnapshotStore, InMemorySnapshotStore
from tests.conftest import ScriptedOperations, action, answer, emitted, mock_bus, usage, wait_until


class RecordingStore(InMemorySnapshotStore):
    def __init__(self) -> None:
        super().__init__()
        self.saved: list[ConversationSnapshot] = []

    async def save(self, snapshot: ConversationSnapshot) -> None:
        self.saved.append(snapshot)
        await super().save(snapshot)


class EchoOperations(ScriptedOperations):
    """Answers every round with the size of the context it was shown."""

    async def think(self, transcript, catalog):
        self.think_calls.append((list(transcript), catalog))
        await asyncio.sleep(0)
        return answer(f"echo {len(transcript)}")


class StalledThinkOperations(ScriptedOperations):
    """think never returns, so a round stays open until it is cancelled."""

    async def think(self, transcript, catalog):
        self.think_calls.append((list(transcript), catalog))
        await asyncio.Event().wait()


def _always(info: EpochInfo) -> bool:
    return True


def _idle(host: ConversationHost, cid: str, entries: int):
    def check() -> bool:
        orch = host.orchestrator(cid)
        return (
            orch is not None
            and len(orch.transcript) == entries
            and orch.phase == Phase.AWAITING_TURN
        )

    return check


def _user(message: str, name: str = "alice", timestamp: str = "t0") -> str:
    return render_user_turn(PendingTurn(name=name, message=message, timestamp=timestamp))


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_end_to_end(self, settings, persister):
        ops = ScriptedOperations([answer("4", thought="simple math", tokens=usage(10, 5))])
        store = RecordingStore()
        host = ConversationHost(ops, CapabilityRegistry(), settings, persister=persister, store=store)

        await host.start("c1")
        assert host.is_running("c1")
        host.enqueue_turn("c1", "alice", "What is 2+2?", "t0")
        await wait_until(_idle(host, "c1", 2))

        assert host.phase("c1") == Phase.AWAITING_TURN
        assert len(persister.calls) == 2

        host.request_exit("c1")
        total = await asyncio.wait_for(host.result("c1"), 1.0)
        assert total == Usage(**usage(10, 5))
        assert not host.is_running("c1")
        assert "c1" not in store
        assert await host.snapshot("c1") is None

    @pytest.mark.asyncio
    async def test_duplicate_start_rejected(self, settings):
        host = ConversationHost(ScriptedOperations(), CapabilityRegistry(), settings)
        await host.start("c1")
        with pytest.raises(ConversationStateError):
            await host.start("c1")
        await host.stop()

    @pytest.mark.asyncio
    async def test_unknown_conversation_rejected(self, settings):
        host = ConversationHost(ScriptedOperations(), CapabilityRegistry(), settings)
        with pytest.raises(ConversationStateError):
            host.enqueue_turn("ghost", "a", "hi", "t0")
        with pytest.raises(ConversationStateError):
            host.request_exit("ghost")
        with pytest.raises(ConversationStateError):
            await host.result("ghost")

    @pytest.mark.asyncio
    async def test_signal_after_exit_rejected(self, settings):
        host = ConversationHost(ScriptedOperations(), CapabilityRegistry(), settings)
        await host.start("c1")
        host.request_exit("c1")
        await asyncio.wait_for(host.result("c1"), 1.0)
        with pytest.raises(ConversationStateError):
            host.enqueue_turn("c1", "a", "too late", "t1")

    @pytest.mark.asyncio
    async def test_stop_cancels_conversations(self, settings):
        store = RecordingStore()
        host = ConversationHost(ScriptedOperations(), CapabilityRegistry(), settings, store=store)
        await host.start("c1")
        await host.start("c2")
        await host.stop()
        assert not host.is_running("c1")
        assert not host.is_running("c2")
        assert sorted(s.conversation_id for s in store.saved) == ["c1", "c2"]

    @pytest.mark.asyncio
    async def test_result_of_unstarted_conversation_rejected(self, settings):
        host = ConversationHost(ScriptedOperations(), CapabilityRegistry(), settings)
        host._conversations["c1"] = _Conversation(
            conversation_id="c1",
            inbox=MessageInbox(),
            snapshot=ConversationSnapshot(conversation_id="c1"),
        )
        with pytest.raises(ConversationStateError, match="never started"):
            await host.result("c1")


class TestContinuation:
    @pytest.mark.asyncio
    async def test_epochs_continue_with_condensed_state(self, settings):
        ops = ScriptedOperations(
            [action("nope", tokens=usage(1, 1)), answer("done", tokens=usage(2, 2))],
            summary="C",
            compact_usage=usage(3, 3),
        )
        store = RecordingStore()
        bus = mock_bus()
        host = ConversationHost(
            ops, CapabilityRegistry(), settings, store=store, bus=bus, advisor=_always
        )

        await host.start("c1")
        host.enqueue_turn("c1", "alice", "go", "t0")
        # Epoch 1 starts from the spliced snapshot and answers without a new turn
        await wait_until(_idle(host, "c1", 5))

        orch = host.orchestrator("c1")
        assert orch.epoch == 1
        assert orch.transcript[0] == "C"
        assert orch.transcript[-1] == render_answer("done")

        assert len(store.saved) == 1
        saved = store.saved[0]
        assert saved.epoch == 1
        assert saved.round_open
        assert len(saved.transcript) == 4

        continued = emitted(bus, "continued")
        assert [e.data["epoch"] for e in continued] == [1]

        host.request_exit("c1")
        total = await asyncio.wait_for(host.result("c1"), 1.0)
        # Usage from before the continuation is carried over
        assert total == Usage(input_tokens=6, output_tokens=6, total_tokens=12)
        assert "c1" not in store
        exited = emitted(bus, "conversation_exited")
        assert [e.data["total_tokens"] for e in exited] == [12]

    @pytest.mark.asyncio
    async def test_turn_during_compaction_reaches_next_epoch(self, settings):
        ops = ScriptedOperations([action("nope"), answer("saw it")])
        store = RecordingStore()
        host = ConversationHost(ops, CapabilityRegistry(), settings, store=store, advisor=_always)
        ops.on_compact = lambda: host.enqueue_turn("c1", "bob", "late", "t1")

        await host.start("c1")
        host.enqueue_turn("c1", "alice", "go", "t0")
        await wait_until(_idle(host, "c1", 6))

        assert [p.message for p in store.saved[0].pending] == ["late"]
        late = _user("late", name="bob", timestamp="t1")
        assert late in ops.think_calls[1][0]
        assert host.orchestrator("c1").transcript[-2:] == [late, render_answer("saw it")]
        await host.stop()

    @pytest.mark.asyncio
    async def test_operation_advisor_drives_continuation(self, settings):
        ops = ScriptedOperations([action("a"), action("b"), answer("done")])
        store = RecordingStore()
        # think+act+observe = 3 operations per action round
        host = ConversationHost(
            ops,
            CapabilityRegistry(),
            settings,
            store=store,
            advisor=OperationCountAdvisor(operation_limit=6),
        )

        await host.start("c1")
        host.enqueue_turn("c1", "alice", "go", "t0")
        await wait_until(lambda: len(ops.thoughts) == 0 and host.phase("c1") == Phase.AWAITING_TURN)

        assert [s.epoch for s in store.saved] == [1]
        assert len(ops.compact_calls) == 1
        assert host.orchestrator("c1").epoch == 1
        await host.stop()


class TestFailureAndResume:
    @pytest.mark.asyncio
    async def test_failed_conversation_resumes_from_snapshot(self, settings):
        ops = ScriptedOperations([ConnectionError("down"), ConnectionError("down")])
        store = RecordingStore()
        bus = mock_bus()
        host = ConversationHost(ops, CapabilityRegistry(), settings, store=store, bus=bus)

        await host.start("c1")
        host.enqueue_turn("c1", "alice", "hi", "t0")
        with pytest.raises(OperationFailedError):
            await asyncio.wait_for(host.result("c1"), 1.0)

        assert host.phase("c1") == Phase.FAILED
        failed = await host.snapshot("c1")
        assert failed.round_open
        assert failed.transcript == [_user("hi")]
        assert len(emitted(bus, "conversation_failed")) == 1

        ops.thoughts.append(answer("back again"))
        await host.start("c1")
        await wait_until(_idle(host, "c1", 2))
        assert host.orchestrator("c1").transcript == [_user("hi"), render_answer("back again")]

        host.request_exit("c1")
        await asyncio.wait_for(host.result("c1"), 1.0)
        assert "c1" not in store

    @pytest.mark.asyncio
    async def test_failed_compaction_resumes_without_repeating_the_act(self, settings):
        charges: list[int] = []
        registry = CapabilityRegistry()

        async def charge(amount: int) -> str:
            charges.append(amount)
            return f"charged {amount}"

        registry.register("charge", charge)
        ops = ScriptedOperations([action("charge", {"amount": 5})], summary="C")
        ops.compact_error = ConnectionError("summarizer down")
        store = RecordingStore()
        host = ConversationHost(ops, registry, settings, store=store, advisor=_always)

        await host.start("c1")
        host.enqueue_turn("c1", "alice", "pay", "t0")
        with pytest.raises(OperationFailedError):
            await asyncio.wait_for(host.result("c1"), 1.0)

        failed = await host.snapshot("c1")
        assert failed.compaction_due
        assert len(failed.transcript) == 4

        ops.compact_error = None
        ops.thoughts.append(answer("paid"))
        await host.start("c1")
        await wait_until(_idle(host, "c1", 5))

        orch = host.orchestrator("c1")
        assert orch.epoch == 1
        assert orch.transcript[0] == "C"
        assert orch.transcript[-1] == render_answer("paid")
        assert charges == [5]
        await host.stop()

    @pytest.mark.asyncio
    async def test_restart_from_file_store(self, settings, tmp_path):
        ops = ScriptedOperations([action("nope"), answer("first life")], summary="C")
        host = ConversationHost(
            ops, CapabilityRegistry(), settings, store=FileSnapshotStore(tmp_path), advisor=_always
        )
        await host.start("c/1")
        host.enqueue_turn("c/1", "alice", "go", "t0")
        await wait_until(_idle(host, "c/1", 5))
        await host.stop()

        # A new process only has the directory, and picks up where stop() left off
        ops.thoughts.append(answer("second life"))
        restarted = ConversationHost(
            ops, CapabilityRegistry(), settings, store=FileSnapshotStore(tmp_path)
        )
        await restarted.start("c/1")
        await wait_until(_idle(restarted, "c/1", 5))

        orch = restarted.orchestrator("c/1")
        assert orch.epoch == 1
        assert orch.transcript[0] == "C"
        assert orch.transcript[-1] == render_answer("first life")

        restarted.enqueue_turn("c/1", "alice", "again", "t1")
        await wait_until(_idle(restarted, "c/1", 7))
        assert orch.transcript[-1] == render_answer("second life")

        restarted.request_exit("c/1")
        await asyncio.wait_for(restarted.result("c/1"), 1.0)
        assert list(tmp_path.iterdir()) == []


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_mid_round_keeps_turns(self, settings):
        store = RecordingStore()
        ops = StalledThinkOperations()
        host = ConversationHost(ops, CapabilityRegistry(), settings, store=store)

        await host.start("c1")
        host.enqueue_turn("c1", "alice", "first", "t0")
        await wait_until(lambda: len(ops.think_calls) == 1)
        host.enqueue_turn("c1", "alice", "second", "t1")
        await host.stop()

        saved = await host.snapshot("c1")
        assert saved.round_open
        assert saved.transcript == [_user("first")]
        assert [p.message for p in saved.pending] == ["second"]

        restarted = ConversationHost(EchoOperations(), CapabilityRegistry(), settings, store=store)
        await restarted.start("c1")
        await wait_until(_idle(restarted, "c1", 3))
        assert restarted.orchestrator("c1").transcript == [
            _user("first"),
            _user("second", timestamp="t1"),
            render_answer("echo 2"),
        ]
        await restarted.stop()

    @pytest.mark.asyncio
    async def test_stop_while_idle_keeps_transcript(self, settings):
        store = RecordingStore()
        ops = ScriptedOperations([answer("hello")])
        host = ConversationHost(ops, CapabilityRegistry(), settings, store=store)

        await host.start("c1")
        host.enqueue_turn("c1", "alice", "hi", "t0")
        await wait_until(_idle(host, "c1", 2))
        await host.stop()

        saved = await host.snapshot("c1")
        assert not saved.round_open
        assert saved.transcript == [_user("hi"), render_answer("hello")]

        # Nothing new to answer, so the restarted conversation just waits
        restarted = ConversationHost(ops, CapabilityRegistry(), settings, store=store)
        await restarted.start("c1")
        await wait_until(_idle(restarted, "c1", 2))
        assert len(ops.think_calls) == 1
        await restarted.stop()

    @pytest.mark.asyncio
    async def test_stop_before_first_step_keeps_queued_turns(self, settings):
        store = RecordingStore()
        host = ConversationHost(ScriptedOperations(), CapabilityRegistry(), settings, store=store)

        await host.start("c1")
        host.enqueue_turn("c1", "alice", "queued", "t0")
        host.request_exit("c1")
        await host.stop()

        saved = await host.snapshot("c1")
        assert saved.transcript == []
        assert [p.message for p in saved.pending] == ["queued"]
        assert saved.exit_requested


class TestIsolation:
    @pytest.mark.asyncio
    async def test_conversations_do_not_share_state(self, settings):
        ops = EchoOperations()
        host = ConversationHost(ops, CapabilityRegistry(), settings)

        await host.start("a")
        await host.start("b")
        host.enqueue_turn("a", "alice", "for a", "t0")
        host.enqueue_turn("b", "bob", "for b", "t0")
        host.enqueue_turn("b", "bob", "again b", "t1")
        await wait_until(_idle(host, "a", 2))
        await wait_until(_idle(host, "b", 3))

        a_transcript = host.orchestrator("a").transcript
        b_transcript = host.orchestrator("b").transcript
        assert a_transcript == [_user("for a"), render_answer("echo 1")]
        assert b_transcript == [
            _user("for b", name="bob"),
            _user("again b", name="bob", timestamp="t1"),
            render_answer("echo 2"),
        ]

        host.request_exit("a")
        await asyncio.wait_for(host.result("a"), 1.0)
        assert host.is_running("b")
        await host.stop()


class TestThreadsafeSignals:
    @pytest.mark.asyncio
    async def test_turn_and_exit_from_another_thread(self, settings):
        ops = ScriptedOperations([answer("from thread")])
        host = ConversationHost(ops, CapabilityRegistry(), settings)
        await host.start("c1")

        def caller() -> None:
            host.enqueue_turn_threadsafe("c1", "alice", "hi", "t0")
            host.request_exit_threadsafe("c1")

        t = threading.Thread(target=caller)
        t.start()
        t.join()

        await asyncio.wait_for(host.result("c1"), 1.0)
        assert ops.think_calls[0][0] == [_user("hi")]

    def test_threadsafe_before_start_rejected(self, settings):
        host = ConversationHost(ScriptedOperations(), CapabilityRegistry(), settings)
        with pytest.raises(ConversationStateError):
            host.request_exit_threadsafe("c1")


class TestOperationCountAdvisor:
    def _info(self, operations: int, tokens: int = 0) -> EpochInfo:
        return EpochInfo(
            conversation_id="c",
            epoch=0,
            operations=operations,
            transcript_entries=1,
            transcript_tokens=tokens,
        )

    def test_operation_limit(self):
        advisor = OperationCountAdvisor(operation_limit=10)
        assert not advisor(self._info(9))
        assert advisor(self._info(10))

    def test_token_limit(self):
        advisor = OperationCountAdvisor(operation_limit=100, token_limit=500)
        assert not advisor(self._info(1, tokens=499))
        assert advisor(self._info(1, tokens=500))

    def test_token_limit_disabled_by_zero(self):
        advisor = OperationCountAdvisor(operation_limit=100)
        assert not advisor(self._info(1, tokens=10**6))

    def test_from_settings(self, settings):
        advisor = OperationCountAdvisor.from_settings(settings)
        assert advisor.operation_limit == settings.history_operation_limit
        assert advisor.token_limit == settings.history_token_limit
