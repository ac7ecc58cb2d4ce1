import asyncio

import pytest

from chat_core.domain.exceptions import BackendConnectionError, RequestError, StorageError
from chat_core.engine.chat_engine import ChatEngine, derive_title
from chat_core.engine.generation import GenerationState
from chat_core.infrastructure.storage.json_store import JsonConversationStore


class FlakyStore(JsonConversationStore):
    """update_conversation 前 failures 次抛出 StorageError，之后恢复正常。"""

    def __init__(self, root, failures=0):
        super().__init__(root=root)
        self.failures = failures

    async def update_conversation(self, conversation_id, partial):
        if self.failures:
            self.failures -= 1
            raise StorageError(code="STORE_WRITE_ERROR", message="disk full")
        await super().update_conversation(conversation_id, partial)


async def _engine(tmp_path, provider, store=None, **kw):
    store = store or JsonConversationStore(root=tmp_path)
    options = dict(
        default_provider="ollama",
        default_model="m",
        read_timeout=2.0,
        grace=0.01,
        min_interval=0.01,
        debounce=0.01,
        summary_delay=0.01,
        quiet_period=0.02,
    )
    options.update(kw)
    engine = ChatEngine(store, {"ollama": provider}, **options)
    await engine.bootstrap()
    return engine, store


def test_derive_title():
    assert derive_title("  hello \n  world  ") == "hello world"
    assert derive_title("x" * 80) == "x" * 50
    assert derive_title(" \n ") == "New Conversation"


@pytest.mark.asyncio
async def test_bootstrap_seeds_personas_and_first_conversation(tmp_path, make_provider):
    engine, store = await _engine(tmp_path, make_provider())

    names = {p.name for p in engine.personas()}
    assert names == {"Assistant", "Coding Mentor", "Creative Writer"}
    conversations = engine.list_conversations()
    assert len(conversations) == 1
    assert engine.active_conversation_id == conversations[0].id
    default = next(p for p in engine.personas() if p.is_default)
    assert conversations[0].persona_id == default.id
    assert len(await store.list_personas()) == 3
    await engine.aclose()


@pytest.mark.asyncio
async def test_send_turn_streams_persists_and_summarizes(tmp_path, make_provider):
    provider = make_provider(chunks=["Hel", "lo", " there"])
    engine, store = await _engine(tmp_path, provider)
    cid = engine.active_conversation_id
    snapshots = []

    handle = await engine.send_turn(cid, "  What is   asyncio?  ")
    engine.subscribe_snapshots(snapshots.append, message_id=handle.message_id)
    assert await handle.wait() is GenerationState.COMPLETED

    conv = engine.conversation(cid)
    assert [(m.role, m.content) for m in conv.messages] == [
        ("user", "  What is   asyncio?  "),
        ("assistant", "Hello there"),
    ]
    assert conv.title == "What is asyncio?"
    assert snapshots[-1].final and snapshots[-1].content == "Hello there"
    prompt = provider.calls[0]
    assert prompt[0].role == "system" and "You are roleplaying as Assistant" in prompt[0].content
    assert prompt[-1].content == "  What is   asyncio?  "

    await asyncio.sleep(0.2)
    assert conv.summary == "Short summary"
    await engine.synchronizer.drain()
    stored = await store.get_conversation(cid)
    assert [m.content for m in stored.messages] == ["  What is   asyncio?  ", "Hello there"]
    assert stored.title == "What is asyncio?"
    assert stored.summary == "Short summary"

    second = await engine.send_turn(cid, "And tasks?")
    await second.wait()
    assert any(t.content == "Conversation summary: Short summary" for t in provider.calls[1])
    await engine.aclose()


@pytest.mark.asyncio
async def test_newer_send_supersedes_older(tmp_path, make_provider):
    provider = make_provider(chunks=["a", "b"], delay=0.05)
    engine, _ = await _engine(tmp_path, provider)
    cid = engine.active_conversation_id

    first = await engine.send_turn(cid, "first")
    second = await engine.send_turn(cid, "second")
    await second.wait()

    assert first.state is GenerationState.CANCELLED
    assert second.state is GenerationState.COMPLETED
    conv = engine.conversation(cid)
    assert [(m.role, m.content) for m in conv.messages] == [
        ("user", "first"),
        ("user", "second"),
        ("assistant", "ab"),
    ]
    assert provider.max_open_streams == 1
    await engine.aclose()


@pytest.mark.asyncio
async def test_concurrent_sends_leave_single_generation(tmp_path, make_provider):
    provider = make_provider(chunks=["x", "y"], delay=0.01)
    engine, _ = await _engine(tmp_path, provider)
    cid = engine.active_conversation_id

    handles = await asyncio.gather(*(engine.send_turn(cid, f"msg {i}") for i in range(5)))
    await asyncio.gather(*(h.wait() for h in handles))

    assert [h.state for h in handles].count(GenerationState.COMPLETED) == 1
    assert handles[-1].state is GenerationState.COMPLETED
    assert provider.max_open_streams == 1
    roles = [m.role for m in engine.conversation(cid).messages]
    assert roles.count("user") == 5 and roles.count("assistant") == 1
    await engine.aclose()


@pytest.mark.asyncio
async def test_stop_keeps_partial_reply(tmp_path, make_provider):
    provider = make_provider(chunks=["partial", "more"], hang_after=1)
    engine, _ = await _engine(tmp_path, provider)
    cid = engine.active_conversation_id

    handle = await engine.send_turn(cid, "go")
    await asyncio.sleep(0.02)
    assert engine.cancel_active_generation(cid)
    assert await handle.wait() is GenerationState.CANCELLED
    assert not engine.cancel_active_generation(cid)
    assert engine.conversation(cid).messages[-1].content == "partial"
    assert provider.summary_calls == []
    await engine.aclose()


@pytest.mark.asyncio
async def test_failure_sets_error_and_next_send_clears_it(tmp_path, make_provider):
    provider = make_provider(chunks=[], error=BackendConnectionError(code="NETWORK_ERROR", message="boom"))
    engine, _ = await _engine(tmp_path, provider)
    cid = engine.active_conversation_id
    errors = []
    engine.subscribe_errors(lambda conversation_id, message: errors.append(message))

    handle = await engine.send_turn(cid, "hi")
    assert await handle.wait() is GenerationState.FAILED
    assert engine.error_for(cid) == "boom"
    assert engine.conversation(cid).messages[-1].content == "Error: boom"
    assert errors == ["boom"]

    provider.error = None
    provider.chunks = ["ok"]
    handle = await engine.send_turn(cid, "again")
    await handle.wait()
    assert errors == ["boom", None]
    assert engine.error_for(cid) is None
    # 错误标记不会进入下一次的上下文
    assert all(not t.content.startswith("Error: ") for t in provider.calls[1])
    await engine.aclose()


@pytest.mark.asyncio
async def test_send_without_model_is_rejected(tmp_path, make_provider):
    engine, _ = await _engine(tmp_path, make_provider(), default_model="")
    cid = engine.active_conversation_id

    with pytest.raises(RequestError) as exc:
        await engine.send_turn(cid, "hi")
    assert exc.value.code == "MODEL_REQUIRED"
    assert engine.error_for(cid) == "No model selected"
    assert engine.conversation(cid).messages == []

    with pytest.raises(RequestError):
        await engine.bind_model(cid, "nope", "m")
    await engine.bind_model(cid, "ollama", "gemma2:2b")
    assert engine.conversation(cid).model == "gemma2:2b"
    await engine.aclose()


@pytest.mark.asyncio
async def test_conversation_management(tmp_path, make_provider):
    engine, store = await _engine(tmp_path, make_provider())
    first_id = engine.active_conversation_id
    lists = []
    unsubscribe = engine.subscribe_conversations(lambda convs: lists.append([c.id for c in convs]))

    handle = await engine.send_turn(first_id, "hello")
    await handle.wait()
    copy = await engine.duplicate_conversation(first_id)
    assert copy.title == "hello (Copy)"
    original_ids = {m.id for m in engine.conversation(first_id).messages}
    assert original_ids.isdisjoint({m.id for m in copy.messages})
    assert [m.content for m in copy.messages] == ["hello", "Hello there"]

    await engine.rename_conversation(copy.id, "  Renamed  ")
    assert (await store.get_conversation(copy.id)).title == "Renamed"

    second = await engine.new_conversation()
    assert engine.active_conversation_id == second.id
    await engine.open_conversation(first_id)
    assert engine.active_conversation_id == first_id
    # 切走时写回当前会话
    await engine.open_conversation(second.id)
    assert len((await store.get_conversation(first_id)).messages) == 2

    await engine.delete_conversation(second.id)
    assert engine.active_conversation_id in {copy.id, first_id}
    await engine.delete_conversation(first_id)
    assert first_id not in {c.id for c in await store.list_conversations()}

    unsubscribe()
    count = len(lists)
    await engine.new_conversation()
    assert len(lists) == count
    await engine.aclose()


@pytest.mark.asyncio
async def test_open_conversation_loads_from_store(tmp_path, make_provider):
    engine, store = await _engine(tmp_path, make_provider())
    cid = engine.active_conversation_id
    handle = await engine.send_turn(cid, "persist me")
    await handle.wait()
    await engine.aclose()

    reopened = ChatEngine(store, {"ollama": make_provider()}, default_model="m")
    await reopened.bootstrap()
    conv = await reopened.open_conversation(cid)
    assert [m.content for m in conv.messages] == ["persist me", "Hello there"]
    assert reopened.synchronizer.pending_changes(reopened.state(cid)) == ([], [])
    await reopened.aclose()


@pytest.mark.asyncio
async def test_search_prefers_unsaved_messages(tmp_path, make_provider):
    engine, _ = await _engine(tmp_path, make_provider(chunks=["python answer"]), quiet_period=10)
    cid = engine.active_conversation_id
    handle = await engine.send_turn(cid, "python question")
    await handle.wait()

    hits = await engine.search_messages("python")
    assert [h.message.content for h in hits] == ["python question", "python answer"]
    assert all(h.conversation_id == cid for h in hits)
    assert await engine.search_messages("  ") == []
    await engine.aclose()


@pytest.mark.asyncio
async def test_aclose_flushes_pending_changes(tmp_path, make_provider):
    engine, store = await _engine(tmp_path, make_provider(), quiet_period=10)
    cid = engine.active_conversation_id
    handle = await engine.send_turn(cid, "hi")
    await handle.wait()
    assert (await store.get_conversation(cid)).messages == []

    await engine.aclose()
    assert [m.content for m in (await store.get_conversation(cid)).messages] == ["hi", "Hello there"]
    with pytest.raises(RequestError):
        await engine.send_turn(cid, "late")


@pytest.mark.asyncio
async def test_providers_and_models(tmp_path, make_provider):
    offline = make_provider(name="groq", available=False)
    engine, _ = await _engine(tmp_path, make_provider())
    engine._providers["groq"] = offline

    assert await engine.check_providers() == {"ollama": True, "groq": False}
    models = await engine.list_models()
    assert [(m.name, m.provider) for m in models] == [("m", "ollama")]
    await engine.aclose()


@pytest.mark.asyncio
async def test_export_then_import_into_fresh_engine(tmp_path, make_provider):
    engine, _ = await _engine(tmp_path / "a", make_provider())
    handle = await engine.send_turn(engine.active_conversation_id, "hi")
    await handle.wait()
    data = await engine.export_conversations()
    await engine.aclose()

    other, _ = await _engine(tmp_path / "b", make_provider())
    assert await other.import_conversations(data) == 1
    assert len(other.list_conversations()) == 2
    assert await other.import_conversations(data) == 0
    await other.aclose()


@pytest.mark.asyncio
async def test_binding_survives_failed_write(tmp_path, make_provider):
    store = FlakyStore(tmp_path)
    engine, _ = await _engine(tmp_path, make_provider(), store=store)
    groq = make_provider(name="groq", chunks=["from groq"])
    engine._providers["groq"] = groq
    cid = engine.active_conversation_id

    store.failures = 1
    await engine.bind_model(cid, "groq", "llama")
    assert engine.conversation(cid).provider == "groq"

    handle = await engine.send_turn(cid, "hi")
    await handle.wait()
    assert engine.conversation(cid).messages[-1].content == "from groq"
    await asyncio.sleep(0.1)
    await engine.aclose()

    stored = await store.get_conversation(cid)
    assert (stored.provider, stored.model) == ("groq", "llama")
    assert [m.content for m in stored.messages] == ["hi", "from groq"]


@pytest.mark.asyncio
async def test_summary_from_superseded_reply_is_not_applied(tmp_path, make_provider):
    provider = make_provider(chunks=["first reply"])
    engine, store = await _engine(tmp_path, provider, summary_delay=0.3)
    cid = engine.active_conversation_id

    first = await engine.send_turn(cid, "first question")
    await first.wait()
    await asyncio.sleep(0.05)
    provider.chunks = ["second", " reply"]
    provider.delay = 0.3
    second = await engine.send_turn(cid, "second question")

    # 第一条回复的摘要在第二次生成期间返回，此时会话已前进
    await asyncio.sleep(0.4)
    assert len(provider.summary_calls) == 1
    assert engine.conversation(cid).summary == ""

    assert await second.wait() is GenerationState.COMPLETED
    await asyncio.sleep(0.5)
    assert engine.conversation(cid).summary == "Short summary"
    assert len(provider.summary_calls) == 2
    assert provider.summary_calls[-1][-1].content == "second reply"
    await engine.aclose()
    assert (await store.get_conversation(cid)).summary == "Short summary"


@pytest.mark.asyncio
async def test_persona_change_starts_fresh_conversation(tmp_path, make_provider):
    provider = make_provider()
    engine, _ = await _engine(tmp_path, provider)
    cid = engine.active_conversation_id
    mentor = next(p for p in engine.personas() if p.name == "Coding Mentor")

    handle = await engine.send_turn(cid, "hello")
    await handle.wait()
    await asyncio.sleep(0.2)
    assert engine.conversation(cid).summary == "Short summary"

    fresh = await engine.bind_persona(cid, mentor.id)
    assert fresh.id != cid
    assert engine.active_conversation_id == fresh.id
    assert (fresh.persona_id, fresh.provider, fresh.model) == (mentor.id, "ollama", "m")
    assert fresh.messages == [] and fresh.summary == ""
    assert engine.conversation(cid).persona_id != mentor.id

    handle = await engine.send_turn(fresh.id, "who are you")
    await handle.wait()
    prompt = [t.content for t in provider.calls[-1]]
    assert "You are roleplaying as Coding Mentor" in prompt[0]
    assert not any(c.startswith("Conversation summary") for c in prompt)
    assert "hello" not in prompt
    await engine.aclose()


@pytest.mark.asyncio
async def test_persona_change_on_empty_conversation_rebinds_in_place(tmp_path, make_provider):
    engine, store = await _engine(tmp_path, make_provider())
    cid = engine.active_conversation_id
    writer = next(p for p in engine.personas() if p.name == "Creative Writer")
    engine.conversation(cid).summary = "left over"

    conv = await engine.bind_persona(cid, writer.id)
    assert conv.id == cid
    assert conv.persona_id == writer.id and conv.summary == ""
    stored = await store.get_conversation(cid)
    assert (stored.persona_id, stored.summary) == (writer.id, "")
    assert await engine.bind_persona(cid, writer.id) is conv
    with pytest.raises(RequestError):
        await engine.bind_persona(cid, "p-missing")
    await engine.aclose()


@pytest.mark.asyncio
async def test_persona_crud(tmp_path, make_provider):
    engine, store = await _engine(tmp_path, make_provider())
    cid = engine.active_conversation_id

    poet = await engine.create_persona("  Poet ", "Writes verse", avatar="📜")
    assert (poet.name, poet.is_default) == ("Poet", False)
    assert (await store.get_persona(poet.id)).avatar == "📜"
    with pytest.raises(RequestError):
        await engine.create_persona(" ", "nameless")

    updated = await engine.update_persona(poet.id, description="Writes sonnets")
    assert updated.name == "Poet"
    assert (await store.get_persona(poet.id)).description == "Writes sonnets"
    with pytest.raises(RequestError) as exc:
        await engine.update_persona(poet.id, mood="gloomy")
    assert exc.value.code == "INVALID_FIELDS"

    default = next(p for p in engine.personas() if p.is_default)
    copy = await engine.duplicate_persona(default.id)
    assert copy.id != default.id
    assert (copy.name, copy.is_default) == ("Assistant (Copy)", False)
    assert copy.description == default.description
    assert len(await store.list_personas()) == 5

    await engine.bind_persona(cid, poet.id)
    await engine.delete_persona(poet.id)
    assert poet.id not in {p.id for p in engine.personas()}
    assert engine.conversation(cid).persona_id is None
    assert (await store.get_conversation(cid)).persona_id is None
    with pytest.raises(RequestError):
        await engine.delete_persona(poet.id)
    await engine.aclose()


@pytest.mark.asyncio
async def test_clear_chat_starts_clean_conversation(tmp_path, make_provider):
    provider = make_provider(chunks=[], error=BackendConnectionError(code="NETWORK_ERROR", message="boom"))
    engine, _ = await _engine(tmp_path, provider)
    cid = engine.active_conversation_id
    engine.conversation(cid).summary = "old summary"
    handle = await engine.send_turn(cid, "hi")
    await handle.wait()
    assert engine.error_for(cid) == "boom"

    fresh = await engine.clear_chat(cid)
    assert fresh.id != cid
    assert engine.active_conversation_id == fresh.id
    assert engine.error_for(cid) is None
    assert fresh.messages == [] and fresh.summary == ""
    assert (fresh.persona_id, fresh.provider, fresh.model) == (
        engine.conversation(cid).persona_id,
        "ollama",
        "m",
    )

    provider.error = None
    provider.chunks = ["clean"]
    handle = await engine.send_turn(fresh.id, "again")
    await handle.wait()
    assert [t.content for t in provider.calls[-1]][1:] == ["again"]
    await engine.aclose()


@pytest.mark.asyncio
async def test_switching_to_loaded_conversation_notifies_listeners(tmp_path, make_provider):
    engine, _ = await _engine(tmp_path, make_provider())
    first = engine.active_conversation_id
    handle = await engine.send_turn(first, "hi")
    await handle.wait()
    await engine.new_conversation()

    seen = []
    engine.subscribe_conversations(lambda convs: seen.append(engine.active_conversation_id))
    await engine.open_conversation(first)
    assert seen and seen[-1] == first
    await engine.aclose()
