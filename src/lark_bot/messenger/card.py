"""Interactive card markup for streamed replies."""

from __future__ import annotations

import json
from datetime import datetime, timezone

THINKING_NOTE = "Thinking, please wait..."


def current_time() -> str:
    """UTC timestamp rendered as ``YYYY-MM-DD HH:MM:SS``."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def build_card(
    header: str,
    time: str,
    content: str,
    end_note: str,
    end: bool,
    robot: bool = True,
) -> str:
    """Render a card as JSON: markdown body plus a footer note.

    While streaming the footer shows a thinking indicator; once ``end`` is set
    it shows ``end_note`` followed by ``time``.
    """
    note = f"{end_note or ''}{time}" if end else THINKING_NOTE
    card: dict = {
        "elements": [
            {"tag": "markdown", "content": content, "text_align": "left"},
            {"tag": "note", "elements": [{"tag": "plain_text", "content": note}]},
        ]
    }
    if not robot:
        card["header"] = {
            "template": "violet",
            "title": {"tag": "plain_text", "content": header},
        }
    return json.dumps(card, ensure_ascii=False)


def parse_card(card: str) -> tuple[str, str]:
    """Return ``(content, footer)`` of a card produced by ``build_card``."""
    data = json.loads(card)
    content = ""
    footer = ""
    for element in data.get("elements", []):
        if element.get("tag") == "markdown":
            content = element.get("content", "")
        elif element.get("tag") == "note":
            footer = "".join(e.get("content", "") for e in element.get("elements", []))
    return content, footer
