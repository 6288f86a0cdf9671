"""
Rendering of WaniKani mnemonic markup.

Mnemonics and hints use a handful of pseudo-HTML tags (<radical>, <kanji>,
<vocabulary>, <meaning>, <reading>, <ja>). They become Rich styles, or are
stripped entirely in accessibility mode.
"""

from __future__ import annotations

import re

from rich.markup import escape

from wani.core.models import SubjectKind

TAG_STYLES: dict[str, str] = {
    "radical": "bold white on blue",
    "kanji": "bold white on magenta",
    "vocabulary": "bold white on purple",
    "meaning": "bold",
    "reading": "bold underline",
    "ja": "",
}

KIND_STYLES: dict[SubjectKind, str] = {
    SubjectKind.RADICAL: "bold white on blue",
    SubjectKind.KANJI: "bold white on magenta",
    SubjectKind.VOCABULARY: "bold white on purple",
    SubjectKind.KANA_VOCABULARY: "bold white on purple",
}

_TAG = re.compile(r"</?(radical|kanji|vocabulary|meaning|reading|ja)>")


def strip_tags(text: str) -> str:
    return _TAG.sub("", text)


def to_rich(text: str) -> str:
    """Translate markup tags to Rich markup. Everything else is escaped."""
    parts: list[str] = []
    pos = 0
    for match in _TAG.finditer(text):
        parts.append(escape(text[pos : match.start()]))
        style = TAG_STYLES[match.group(1)]
        if style:
            parts.append(f"[/{style}]" if match.group(0).startswith("</") else f"[{style}]")
        pos = match.end()
    parts.append(escape(text[pos:]))
    return "".join(parts)


def render(text: str, accessible: bool = False) -> str:
    return escape(strip_tags(text)) if accessible else to_rich(text)
