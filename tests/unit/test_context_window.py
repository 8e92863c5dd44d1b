from fitter.services.ai_gateway import select_context_window


def _turns(count: int, size: int) -> list[dict]:
    return [
        {"role": "user" if idx % 2 == 0 else "assistant", "content": f"{idx:03d}" + "x" * (size - 3)}
        for idx in range(count)
    ]


def test_system_message_is_split_from_history() -> None:
    window = select_context_window(
        [{"role": "system", "content": "be brief"}, {"role": "user", "content": "hi"}],
        max_turns=12,
        max_chars=8000,
    )
    assert window.system_instruction == "be brief"
    assert [turn["content"] for turn in window.turns] == ["hi"]


def test_only_first_system_message_is_used() -> None:
    window = select_context_window(
        [
            {"role": "system", "content": "first"},
            {"role": "system", "content": "second"},
            {"role": "user", "content": "hi"},
        ],
        max_turns=12,
        max_chars=8000,
    )
    assert window.system_instruction == "first"
    assert len(window.turns) == 1


def test_char_budget_drops_oldest_turns() -> None:
    history = _turns(10, 1000)
    window = select_context_window(history, max_turns=12, max_chars=8000)
    assert len(window.turns) < len(history)
    assert window.char_count <= 8000
    assert len(window.turns) == 8
    # Newest turns are kept, in original order.
    assert window.turns[-1] == history[-1]
    assert window.turns[0] == history[2]


def test_turn_budget_caps_history() -> None:
    history = _turns(20, 10)
    window = select_context_window(history, max_turns=12, max_chars=8000)
    assert len(window.turns) == 12
    assert list(window.turns) == history[-12:]


def test_truncation_is_deterministic() -> None:
    history = _turns(30, 400)
    first = select_context_window(history, max_turns=12, max_chars=3000)
    second = select_context_window(history, max_turns=12, max_chars=3000)
    assert first == second


def test_oversized_newest_turn_yields_empty_window() -> None:
    history = [{"role": "user", "content": "short"}, {"role": "user", "content": "y" * 9000}]
    window = select_context_window(history, max_turns=12, max_chars=8000)
    assert window.turns == ()
    assert window.char_count == 0
