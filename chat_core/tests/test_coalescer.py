import asyncio

import pytest

from chat_core.engine.coalescer import StreamCoalescer


def _collector():
    seen = []
    return seen, lambda content, final: seen.append((content, final))


@pytest.mark.asyncio
async def test_first_delta_emits_immediately_and_final_is_concatenation():
    seen, emit = _collector()
    c = StreamCoalescer(emit, min_interval=10, debounce=10)
    c.push("Hel")
    c.push("lo")
    c.push(" world")
    assert seen == [("Hel", False)]
    assert c.has_pending_timer

    assert c.finish() == "Hello world"
    assert seen[-1] == ("Hello world", True)
    assert not c.has_pending_timer


@pytest.mark.asyncio
async def test_trailing_emission_after_debounce():
    seen, emit = _collector()
    c = StreamCoalescer(emit, min_interval=10, debounce=0.01)
    c.push("a")
    c.push("b")
    c.push("c")
    await asyncio.sleep(0.05)
    assert seen == [("a", False), ("abc", False)]
    c.finish()
    assert seen[-1] == ("abc", True)


@pytest.mark.asyncio
async def test_emissions_are_length_monotonic():
    seen, emit = _collector()
    c = StreamCoalescer(emit, min_interval=0, debounce=0.01)
    for piece in ["x", "yy", "zzz", "w"]:
        c.push(piece)
    c.finish()
    lengths = [len(content) for content, _ in seen]
    assert lengths == sorted(lengths)
    assert seen[-1] == ("xyyzzzw", True)
    assert [final for _, final in seen].count(True) == 1


@pytest.mark.asyncio
async def test_cancel_before_content_emits_nothing():
    seen, emit = _collector()
    c = StreamCoalescer(emit, min_interval=10, debounce=10)
    assert c.finish(cancelled=True) is None
    assert seen == []


@pytest.mark.asyncio
async def test_cancel_with_content_emits_final():
    seen, emit = _collector()
    c = StreamCoalescer(emit, min_interval=10, debounce=10)
    c.push("part")
    c.push("ial")
    assert c.finish(cancelled=True) == "partial"
    assert seen == [("part", False), ("partial", True)]


@pytest.mark.asyncio
async def test_close_drops_pending_emission():
    seen, emit = _collector()
    c = StreamCoalescer(emit, min_interval=10, debounce=0.01)
    c.push("a")
    c.push("b")
    c.close()
    await asyncio.sleep(0.05)
    assert seen == [("a", False)]
    with pytest.raises(RuntimeError):
        c.push("c")
