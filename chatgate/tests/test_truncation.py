import pytest

from chatgate.core.errors import InputError, TruncationDegenerateInput
from chatgate.core.models import Message
from chatgate.core.truncation import conversation_cost, estimate_tokens, truncate


def _msg(content: str, role: str = "user") -> Message:
    return Message(role=role, content=content)


def test_estimate_tokens_rounds_up():
    assert estimate_tokens("") == 0
    assert estimate_tokens("a") == 1
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_conversation_under_budget_is_returned_unchanged():
    conversation = [_msg("hello"), _msg("hi there", role="assistant"), _msg("how are you")]
    assert conversation_cost(conversation) <= 100
    assert truncate(conversation, 100) == conversation


def test_keeps_newest_contiguous_suffix_in_order():
    # 40 chars -> 10 tokens each
    conversation = [_msg(f"{index:02d}" + "x" * 38) for index in range(6)]
    result = truncate(conversation, 25)
    assert result == conversation[-2:]


def test_scan_stops_at_first_message_over_budget():
    conversation = [_msg("a" * 4), _msg("b" * 400), _msg("c" * 4)]
    result = truncate(conversation, 10)
    # the small oldest message is not pulled in past the big one
    assert result == [conversation[-1]]


def test_newest_message_alone_over_budget_is_kept():
    conversation = [_msg("short"), _msg("z" * 1000)]
    assert truncate(conversation, 5) == [conversation[-1]]


def test_empty_conversation_is_rejected_as_input_error():
    with pytest.raises(TruncationDegenerateInput):
        truncate([], 100)
    assert issubclass(TruncationDegenerateInput, InputError)


def test_result_is_always_a_suffix():
    conversation = [_msg("m" * (index * 7 + 1)) for index in range(20)]
    for budget in (1, 5, 17, 60, 200, 10_000):
        result = truncate(conversation, budget)
        assert result
        assert result == conversation[len(conversation) - len(result) :]
        if len(result) > 1:
            assert conversation_cost(result) <= budget
