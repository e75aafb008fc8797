"""Plain-text rendering of agent replies that arrive as HTML."""
from __future__ import annotations

import re

from bs4 import BeautifulSoup

BLOCK_TAGS = {
    "blockquote",
    "div",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "li",
    "ol",
    "p",
    "pre",
    "table",
    "tr",
    "ul",
}

# Quoted history Freshdesk appends below an agent reply.
QUOTE_SELECTORS = (".freshdesk_quote", ".quoted-text")

_INLINE_SPACE = re.compile(r"[ \t\xa0]+")
_BLANK_LINES = re.compile(r"\n{3,}")


def html_to_text(markup: str) -> str:
    """Strip tags from ``markup`` while keeping paragraph breaks."""

    if not markup:
        return ""
    soup = BeautifulSoup(markup, "html.parser")
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    for selector in QUOTE_SELECTORS:
        for tag in soup.select(selector):
            tag.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for tag in soup.find_all(sorted(BLOCK_TAGS)):
        tag.insert_before("\n")
        tag.insert_after("\n")

    text = soup.get_text()
    lines = [_INLINE_SPACE.sub(" ", line).strip() for line in text.splitlines()]
    return _BLANK_LINES.sub("\n\n", "\n".join(lines)).strip()
