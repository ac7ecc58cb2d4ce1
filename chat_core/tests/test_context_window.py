from datetime import timedelta

from chat_core.domain.conversation import Message, Persona, utcnow
from chat_core.engine.context_window import ContextPolicy, build_context_window, select_history


def _history(*contents, start_role="user"):
    base = utcnow()
    roles = ("user", "assistant") if start_role == "user" else ("assistant", "user")
    return [
        Message(
            id=f"m{i}",
            role=roles[i % 2],
            content=content,
            created_at=base + timedelta(seconds=i),
        )
        for i, content in enumerate(contents)
    ]


def test_short_history_kept_verbatim():
    history = _history("hi", "hello", "how are you", "fine")
    turns = build_context_window(history, None, "", "next")
    assert [t.content for t in turns] == ["hi", "hello", "how are you", "fine", "next"]
    assert turns[-1].role == "user"
    assert all(t.role != "system" for t in turns)


def test_errors_and_empty_messages_are_skipped():
    history = _history("hi", "Error: Failed to connect", "again", "")
    turns = build_context_window(history, None, "", "next")
    assert [t.content for t in turns] == ["hi", "again", "next"]


def test_long_history_keeps_recent_and_longest_substantive_older_turns():
    long_a = "A" * 120
    long_b = "B" * 80
    long_c = "C" * 60
    history = _history("short", long_b, "tiny", long_a, long_c, "ok", "r1", "r2", "r3", "r4")
    policy = ContextPolicy(history_limit=6, recent_turns=4, substantive_chars=50)

    selected = select_history(history, policy)

    assert [m.content for m in selected] == [long_b, long_a, "r1", "r2", "r3", "r4"]


def test_long_history_with_no_substantive_older_turns():
    history = _history("a", "b", "c", "d", "e", "f", "g", "h")
    turns = build_context_window(history, None, "", "new")
    assert [t.content for t in turns] == ["e", "f", "g", "h", "new"]


def test_ten_turn_history_includes_at_most_two_older():
    history = _history(*[f"turn {i} " + "x" * 60 for i in range(10)])
    turns = build_context_window(history, None, "", "latest")
    body = [t.content for t in turns[:-1]]
    assert len(body) == 6
    assert body[-4:] == [m.content for m in history[-4:]]
    older = body[:2]
    assert all(content in [m.content for m in history[:6]] for content in older)


def test_persona_and_summary_lead_the_window():
    persona = Persona(id="p1", name="Mentor", description="Explains code patiently.")
    turns = build_context_window(
        _history("hi", "hello"),
        persona,
        "We talked about Python.",
        "next",
        system_prompt="Answer in English.",
    )
    assert turns[0].role == "system"
    assert "You are roleplaying as Mentor" in turns[0].content
    assert "Explains code patiently." in turns[0].content
    assert turns[0].content.endswith("Answer in English.")
    assert turns[1].role == "system"
    assert turns[1].content == "Conversation summary: We talked about Python."
    assert [t.content for t in turns[2:]] == ["hi", "hello", "next"]


def test_policy_from_settings():
    class Cfg:
        context_history_limit = 8
        context_recent_turns = 5
        context_substantive_chars = 10

    policy = ContextPolicy.from_settings(Cfg())
    assert policy.history_limit == 8
    assert policy.older_budget == 3
