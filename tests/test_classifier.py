from __future__ import annotations

from core.classifier import classify, is_question, strip_inner_monologue


def test_question_mark_makes_a_question() -> None:
    assert is_question("What is 2+2?")


def test_trailing_whitespace_is_trimmed_before_detection() -> None:
    assert is_question("What is 2+2? ")
    assert is_question("  Really?\n")


def test_inner_monologue_is_stripped() -> None:
    result = classify("Nice day*thinking*")
    assert result.stripped_text == "Nice day"
    assert not result.is_question


def test_question_hidden_inside_monologue_does_not_count() -> None:
    assert not is_question("I wonder *is it raining?*")


def test_monologue_before_question_is_removed() -> None:
    result = classify("*tilts head* Why is the sky blue?")
    assert result.stripped_text == "Why is the sky blue?"
    assert result.is_question


def test_bold_markup_is_kept() -> None:
    assert strip_inner_monologue("This is **important** news") == "This is **important** news"
    assert is_question("Is this **important**?")


def test_monologue_only_message_strips_to_empty() -> None:
    assert strip_inner_monologue("*stares out the window*") == ""
