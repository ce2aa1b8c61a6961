import pytest

from nextwordpredict.context import ContextTracker, DecodeSession, DEFAULT_PROMPT_TEMPLATE
from nextwordpredict.exceptions import TokenizerUnavailableException

from conftest import FakeTokenizer


def _tracker(tokenizer, runtime, **kwargs):
    return ContextTracker(tokenizer=tokenizer, runtime=runtime, **kwargs)


# Typing one more character at a time only tokenizes the new character
def test_prefix_extension_deltas(tokenizer, runtime):
    tracker = _tracker(tokenizer, runtime)
    session = DecodeSession(context_window=16)

    plan = tracker.plan(session, "a")
    assert plan.reset
    assert session.previous_text == "a"

    for text, delta in (("ab", "b"), ("abc", "c")):
        session.step = 5
        plan = tracker.plan(session, text)
        assert not plan.reset
        assert tokenizer.encoded[-1] == delta
        assert session.previous_text == text
        assert session.step == 5
    assert runtime.zeroed == 1


# Text that does not extend the previous request resets everything
def test_non_prefix_resets(tokenizer, runtime):
    tracker = _tracker(tokenizer, runtime)
    session = DecodeSession(context_window=16)
    tracker.plan(session, "The cat")
    session.step = 7
    session.mask_state[:7] = True

    plan = tracker.plan(session, "A dog")
    assert plan.reset
    assert session.step == 0
    assert not session.mask_state.any()
    assert session.previous_text == "A dog"
    assert runtime.zeroed == 2
    assert tokenizer.encoded[-1] == DEFAULT_PROMPT_TEMPLATE.replace("{text}", "A dog")


# The beginning of sequence id is forced to the front exactly once
def test_reset_prepends_bos(runtime):
    tokenizer = FakeTokenizer()
    tokenizer.load()
    plan = _tracker(tokenizer, runtime).plan(DecodeSession(16), "hi")
    assert plan.tokens[0] == 2
    assert plan.tokens.count(2) == 1

    tokenizer = FakeTokenizer(emit_bos=True)
    tokenizer.load()
    plan = _tracker(tokenizer, runtime).plan(DecodeSession(16), "hi")
    assert plan.tokens[0] == 2
    assert plan.tokens[1] != 2


def test_explicit_bos_id(tokenizer, runtime):
    tracker = _tracker(tokenizer, runtime, bos_id=9)
    plan = tracker.plan(DecodeSession(16), "hi")
    assert plan.tokens[0] == 9


# Empty text still goes through the template on the reset path
def test_empty_text_resets_with_template(tokenizer, runtime):
    tracker = _tracker(tokenizer, runtime, prompt_template="Poem:{text}")
    session = DecodeSession(16)
    plan = tracker.plan(session, "")
    assert plan.reset
    assert tokenizer.encoded == ["Poem:"]
    assert plan.tokens[0] == 2
    assert len(plan.tokens) == 2

    # previous text is empty so even another empty request resets
    plan = tracker.plan(session, "")
    assert plan.reset


# Repeating the same text needs no new tokens
def test_same_text_no_tokens(tokenizer, runtime):
    tracker = _tracker(tokenizer, runtime)
    session = DecodeSession(16)
    tracker.plan(session, "The cat")
    count = len(tokenizer.encoded)
    plan = tracker.plan(session, "The cat")
    assert plan.tokens == []
    assert not plan.reset
    assert len(tokenizer.encoded) == count


def test_session_invalidate_forces_reset(tokenizer, runtime):
    tracker = _tracker(tokenizer, runtime)
    session = DecodeSession(16)
    tracker.plan(session, "The cat")
    session.invalidate()
    assert tracker.plan(session, "The cat sat").reset


# Text is only recorded once its tokens were produced
def test_failed_encode_not_recorded(tokenizer, runtime):
    tracker = _tracker(tokenizer, runtime)
    session = DecodeSession(context_window=16)
    tracker.plan(session, "The cat")

    tokenizer.close()
    with pytest.raises(TokenizerUnavailableException):
        tracker.plan(session, "A dog")
    assert session.previous_text == ""

    tokenizer.load()
    plan = tracker.plan(session, "A dog sat")
    assert plan.reset
    assert plan.tokens[0] == tracker.bos_id
