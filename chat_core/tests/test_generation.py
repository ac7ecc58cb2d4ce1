import asyncio

import pytest

from chat_core.domain.exceptions import BackendConnectionError
from chat_core.domain.models import ChatTurn
from chat_core.engine.generation import GenerationController, GenerationState


TURNS = [ChatTurn(role="user", content="hi")]


def _controller(**kw):
    snapshots = []
    finished = []
    controller = GenerationController(
        on_snapshot=snapshots.append,
        on_finished=lambda state, handle: finished.append(handle),
        read_timeout=kw.pop("read_timeout", 2.0),
        grace=kw.pop("grace", 0.01),
        min_interval=kw.pop("min_interval", 0.01),
        debounce=kw.pop("debounce", 0.01),
    )
    return controller, snapshots, finished


@pytest.mark.asyncio
async def test_stream_completes_and_final_snapshot_has_full_text(make_state, make_provider):
    state = make_state()
    provider = make_provider(chunks=["Hel", "lo", " there"])
    controller, snapshots, finished = _controller()

    handle = await controller.start(state, TURNS, provider, "m")
    assert controller.query_state("c1") is GenerationState.GENERATING
    assert await handle.wait() is GenerationState.COMPLETED

    message = state.conversation.find_message(handle.message_id)
    assert message.content == "Hello there"
    assert message.frozen
    assert snapshots[-1].content == "Hello there"
    assert snapshots[-1].final
    lengths = [len(s.content) for s in snapshots]
    assert lengths == sorted(lengths)
    assert finished == [handle]
    assert controller.query_state("c1") is GenerationState.IDLE
    assert provider.closed_streams == 1


@pytest.mark.asyncio
async def test_new_start_supersedes_running_generation(make_state, make_provider):
    state = make_state()
    stuck = make_provider(chunks=["partial", "never"], hang_after=1)
    fresh = make_provider(chunks=["new answer"])
    controller, snapshots, _ = _controller()

    first = await controller.start(state, TURNS, stuck, "m")
    await asyncio.sleep(0.02)
    second = await controller.start(state, TURNS, fresh, "m")

    assert first.state is GenerationState.CANCELLED
    assert first.content == "partial"
    assert await second.wait() is GenerationState.COMPLETED
    assert [m.content for m in state.conversation.messages] == ["partial", "new answer"]
    assert stuck.closed_streams == 1
    assert {s.sequence for s in snapshots} == {first.sequence, second.sequence}


@pytest.mark.asyncio
async def test_cancel_before_any_content_removes_placeholder(make_state, make_provider):
    state = make_state()
    provider = make_provider(chunks=["never"], hang_after=0)
    controller, snapshots, _ = _controller()

    handle = await controller.start(state, TURNS, provider, "m")
    await asyncio.sleep(0)
    controller.cancel(handle)
    assert await handle.wait() is GenerationState.CANCELLED
    assert handle.error.code == "CANCELLED"

    assert state.conversation.messages == []
    assert snapshots == []


@pytest.mark.asyncio
async def test_cancel_keeps_partial_content(make_state, make_provider):
    state = make_state()
    provider = make_provider(chunks=["par", "tial", "rest"], hang_after=2)
    controller, snapshots, _ = _controller()

    handle = await controller.start(state, TURNS, provider, "m")
    await asyncio.sleep(0.02)
    await controller.cancel_and_wait(handle)

    assert handle.state is GenerationState.CANCELLED
    message = state.conversation.find_message(handle.message_id)
    assert message.content == "partial"
    assert message.frozen
    assert snapshots[-1].final and snapshots[-1].content == "partial"


@pytest.mark.asyncio
async def test_backend_error_rewrites_placeholder(make_state, make_provider):
    state = make_state()
    provider = make_provider(
        chunks=["a"],
        error=BackendConnectionError(code="NETWORK_ERROR", message="boom"),
    )
    controller, snapshots, _ = _controller()

    handle = await controller.start(state, TURNS, provider, "m")
    assert await handle.wait() is GenerationState.FAILED

    message = state.conversation.find_message(handle.message_id)
    assert message.content == "Error: boom"
    assert message.is_error
    assert state.error == "boom"
    assert handle.error.code == "NETWORK_ERROR"
    assert snapshots[-1].error and snapshots[-1].final


@pytest.mark.asyncio
async def test_stalled_stream_times_out(make_state, make_provider):
    state = make_state()
    provider = make_provider(chunks=["never"], hang_after=0)
    controller, _, _ = _controller(read_timeout=0.05)

    handle = await controller.start(state, TURNS, provider, "m")
    assert await handle.wait() is GenerationState.FAILED
    assert handle.error.code == "STREAM_TIMEOUT"
    assert handle.content.startswith("Error: No response from ollama")


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_internal_error(make_state, make_provider):
    state = make_state()
    provider = make_provider(chunks=[], error=ValueError("bad frame"))
    controller, _, _ = _controller()

    handle = await controller.start(state, TURNS, provider, "m")
    assert await handle.wait() is GenerationState.FAILED
    assert handle.error.code == "INTERNAL_ERROR"
    assert handle.content == "Error: bad frame"


@pytest.mark.asyncio
async def test_concurrent_starts_leave_single_generation(make_state, make_provider):
    state = make_state()
    provider = make_provider(chunks=["a", "b", "c"], delay=0.01)
    controller, _, _ = _controller()

    handles = await asyncio.gather(*(controller.start(state, TURNS, provider, "m") for _ in range(5)))
    await asyncio.gather(*(h.wait() for h in handles))

    states = [h.state for h in handles]
    assert states.count(GenerationState.COMPLETED) == 1
    assert states.count(GenerationState.CANCELLED) == 4
    assert provider.max_open_streams == 1
    assert [m.content for m in state.conversation.messages] == ["abc"]
