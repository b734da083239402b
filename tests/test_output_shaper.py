from processing.output_shaper import (
    capitalize_sentences,
    limit_sentences,
    polish_text,
    sanitize_text,
    shape_reply,
)
from utils.text_processing import count_sentences

SENTENCES = [
    f"Sentence number {i} keeps rambling about the quad and the stadium gate and the fountain."
    for i in range(5)
]


def test_five_sentences_trimmed_to_two_within_budget():
    text = " ".join(SENTENCES)
    assert len(text) >= 400
    shaped = shape_reply(text, max_sentences=2, max_chars=190)
    assert shaped == f"{SENTENCES[0]} {SENTENCES[1]}"
    assert len(shaped) <= 190
    assert count_sentences(shaped) == 2
    assert shaped[-1] in ".!?"


def test_overlong_text_gets_ellipsis_within_limit():
    shaped = shape_reply(" ".join(SENTENCES), max_sentences=2, max_chars=100)
    assert shaped.endswith("...")
    assert len(shaped) <= 100


def test_terminal_punctuation_added_and_dangling_removed():
    assert polish_text("go to the quad,") == "Go to the quad."
    assert polish_text("really?") == "Really?"
    assert shape_reply("") == ""


def test_sanitize_drops_undefined_and_newlines():
    assert sanitize_text("Hello undefined\n\nworld !") == "Hello world!"


def test_capitalize_sentences():
    assert capitalize_sentences("one. two! three") == "One. Two! Three"


def test_limit_sentences_keeps_short_text():
    assert limit_sentences("Only one.", 2) == "Only one."
    assert limit_sentences("A. B. C.", 1) == "A."


def test_shape_reply_is_deterministic():
    text = "move now. the gate closes soon. bring the badge."
    assert shape_reply(text) == shape_reply(text) == "Move now. The gate closes soon."


def test_tiny_budget_hard_cuts_without_ellipsis():
    assert shape_reply("Hello there friend, how are you.", 2, 2) == "He"
    assert shape_reply("Hello there friend, how are you.", 2, 3) == "Hel"
