"""Shared notification formatting helpers.

Keeping formatting here prevents drift between adapters and keeps messages
consistent regardless of delivery channel.
"""

from __future__ import annotations

import html
import re

from milesguard.core.models import RelevantMessage

DIVIDER = "──────────────"


def keyword_tags(keywords: tuple[str, ...]) -> str:
    """Render matched keywords as hashtags ("points transfer" -> #points_transfer)."""

    return " ".join("#" + re.sub(r"\s+", "_", keyword.strip()) for keyword in keywords if keyword.strip())


def clip_text(text: str, snippet_chars: int) -> tuple[str, bool]:
    """Return the snippet and whether it was truncated."""

    if snippet_chars <= 0 or len(text) <= snippet_chars:
        return text, False
    return text[:snippet_chars].rstrip() + "\n...", True


def _timestamp(message: RelevantMessage) -> str:
    return message.received_at.astimezone().strftime("%H:%M:%S %d-%m-%Y").strip()


def _format_markdown(message: RelevantMessage, snippet_chars: int) -> str:
    """Create the Markdown notification body used by Saved Messages."""

    # Telegram Markdown is supported by passing parse_mode="Markdown".
    def escape_md(value: str) -> str:
        for ch in r"*[`_":
            value = value.replace(ch, f"\\{ch}")
        return value

    snippet, truncated = clip_text(message.text, snippet_chars)

    lines = [
        f"[{_timestamp(message)}]",
        "**Offer detected**",
        f"**Group:** {escape_md(message.conversation_name)}",
        f"**From:**  {escape_md(message.sender_name)}",
    ]
    if message.matched_keywords:
        lines.append(f"**Keywords:** {escape_md(keyword_tags(message.matched_keywords))}")
    lines.extend([DIVIDER, "", escape_md(snippet), ""])
    if truncated:
        lines.append(f"_Message truncated ({len(message.text)} characters total)_")
    lines.append(DIVIDER)
    return "\n".join(lines)


def _format_html(message: RelevantMessage, snippet_chars: int) -> str:
    """Create the HTML notification body used by the Bot API adapter."""

    snippet, truncated = clip_text(message.text, snippet_chars)

    parts = [
        f"[{html.escape(_timestamp(message))}]",
        "<b>Offer detected</b>",
        f"<b>Group:</b> {html.escape(message.conversation_name)}",
        f"<b>From:</b> {html.escape(message.sender_name)}",
    ]
    if message.matched_keywords:
        parts.append(f"<b>Keywords:</b> {html.escape(keyword_tags(message.matched_keywords))}")
    parts.extend([DIVIDER, "", f"<pre>{html.escape(snippet)}</pre>", ""])
    if truncated:
        parts.append(f"<i>Message truncated ({len(message.text)} characters total)</i>")
    parts.append(DIVIDER)
    return "\n".join(parts)


def format_notification(message: RelevantMessage, snippet_chars: int, mode: str) -> str:
    """Return the notification formatted for the requested mode."""

    if mode == "markdown":
        return _format_markdown(message, snippet_chars)
    if mode == "html":
        return _format_html(message, snippet_chars)
    raise ValueError(f"Unsupported notification format: {mode}")
