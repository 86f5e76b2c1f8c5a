from __future__ import annotations

import pytest
from fakes import make_relevant

from milesguard.adapters.notification_formatting import clip_text, format_notification, keyword_tags


def test_keyword_tags_join_multi_word_keywords() -> None:
    assert keyword_tags(("100%", "points transfer")) == "#100% #points_transfer"


def test_keyword_tags_collapse_whitespace_and_skip_blanks() -> None:
    assert keyword_tags((" double  miles\t", "   ", "bonus")) == "#double_miles #bonus"


def test_clip_text_marks_truncation() -> None:
    assert clip_text("short", 10) == ("short", False)
    snippet, truncated = clip_text("a" * 20, 10)
    assert truncated
    assert snippet == "a" * 10 + "\n..."


def test_html_notification_escapes_content() -> None:
    message = make_relevant(text="Bonus <b>100%</b> & more", sender_name="Ana <admin>")
    body = format_notification(message, 1000, mode="html")
    assert "<b>Group:</b> Southern Flights" in body
    assert "Ana &lt;admin&gt;" in body
    assert "<pre>Bonus &lt;b&gt;100%&lt;/b&gt; &amp; more</pre>" in body
    assert "#100% #bonus" in body
    assert "truncated" not in body


def test_markdown_notification_escapes_and_reports_truncation() -> None:
    message = make_relevant(text="*50%* off " + "x" * 40, conversation_name="Miles_Club")
    body = format_notification(message, 20, mode="markdown")
    assert "**Group:** Miles\\_Club" in body
    assert "\\*50%\\* off" in body
    assert f"Message truncated ({len(message.text)} characters total)" in body


def test_unknown_format_is_rejected() -> None:
    with pytest.raises(ValueError):
        format_notification(make_relevant(), 100, mode="plain")
