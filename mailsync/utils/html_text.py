"""
HTML to plain text conversion for message bodies.

Used by the message normalizer when a message carries only a text/html part.
No logging and no I/O so the normalizer stays pure.
"""

import re
import unicodedata
from html.parser import HTMLParser


class HTMLTextExtractor(HTMLParser):
    """
    Extract readable text from an HTML body.

    Block-level tags become newlines, script/style content is dropped.

    Example:
        >>> extractor = HTMLTextExtractor()
        >>> extractor.feed('<p>Hello <strong>World</strong></p>')
        >>> extractor.get_text()
        'Hello World'
    """

    BLOCK_TAGS = {
        "p", "div", "br", "tr", "h1", "h2", "h3", "h4", "h5", "h6",
        "li", "blockquote", "pre", "hr", "table",
    }
    SKIP_TAGS = {"script", "style", "head", "title"}

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.text_parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs: list) -> None:
        tag = tag.lower()
        if tag in self.SKIP_TAGS:
            self._skip_depth += 1
        elif tag in self.BLOCK_TAGS:
            self._newline()

    def handle_endtag(self, tag: str) -> None:
        tag = tag.lower()
        if tag in self.SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
        elif tag in self.BLOCK_TAGS:
            self._newline()

    def handle_data(self, data: str) -> None:
        if self._skip_depth:
            return
        stripped = data.strip()
        if stripped:
            self.text_parts.append(stripped)
            self.text_parts.append(" ")

    def _newline(self) -> None:
        if self.text_parts and self.text_parts[-1] != "\n":
            self.text_parts.append("\n")

    def get_text(self) -> str:
        """Return the extracted text with whitespace collapsed."""
        text = "".join(self.text_parts)
        text = re.sub(r"[ \t]+", " ", text)
        text = re.sub(r" *\n *", "\n", text)
        text = re.sub(r"\n{3,}", "\n\n", text)
        return text.strip()


def html_to_text(html_content: str) -> str:
    """
    Convert an HTML body to plain text.

    Falls back to stripping tags with a regex when the HTML parser rejects
    the input.

    Example:
        >>> html_to_text('<p>Hello</p><p>World</p>')
        'Hello\\nWorld'
    """
    if not html_content:
        return ""
    try:
        parser = HTMLTextExtractor()
        parser.feed(html_content)
        parser.close()
        text = parser.get_text()
    except Exception:
        text = re.sub(r"<[^>]+>", " ", html_content)
        text = re.sub(r"\s+", " ", text).strip()
    return unicodedata.normalize("NFKC", text)
