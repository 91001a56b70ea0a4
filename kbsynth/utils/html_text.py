"""
HTML to plain text conversion for embedding input.
"""

import re

from bs4 import BeautifulSoup

_BLOCK_TAGS = ["p", "div", "li", "br", "h1", "h2", "h3", "h4", "h5", "h6", "tr", "pre"]


def html_to_text(content: str) -> str:
    """
    Convert an HTML fragment to whitespace-normalized plain text.

    Block-level elements become line breaks; scripts and styles are dropped.
    """
    if not content:
        return ""

    soup = BeautifulSoup(content, "html.parser")
    for element in soup(["script", "style"]):
        element.decompose()
    for element in soup.find_all(_BLOCK_TAGS):
        element.insert_after("\n")

    text = soup.get_text()
    lines = [re.sub(r"[ \t\r\f\v]+", " ", line).strip() for line in text.split("\n")]
    return "\n".join(line for line in lines if line)
