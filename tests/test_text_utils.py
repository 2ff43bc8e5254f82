from storyflow.text_utils import (
    append_dictated_text,
    count_words,
    reading_time_minutes,
    strip_html,
    truncate_text,
)


def test_strip_html():
    assert strip_html("<p>Tom &amp; Jerry</p>").strip() == "Tom & Jerry"
    assert strip_html("") == ""


def test_count_words():
    assert count_words("<p>One</p><p>two three</p>") == 3
    assert count_words("   ") == 0
    assert count_words("<p></p>") == 0
    assert count_words("plain   spaced\ttext") == 3


def test_truncate_text():
    assert truncate_text("short", 10) == "short"
    assert truncate_text("a longer sentence", 8) == "a longer..."
    assert truncate_text("", 5) == ""


def test_reading_time():
    assert reading_time_minutes("") == 0
    assert reading_time_minutes("word " * 201) == 2


def test_append_dictated_text():
    assert append_dictated_text("", " Once upon ") == "Once upon"
    assert append_dictated_text("Once upon", "a time") == "Once upon a time"
    assert append_dictated_text("Line one\n", "line two") == "Line one\nline two"
    assert append_dictated_text("Unchanged", "   ") == "Unchanged"
