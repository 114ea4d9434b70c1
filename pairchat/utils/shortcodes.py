"""
Gif shortcode grammar.

Two spellings are recognised, both naming a catalog entry:

    [gif:wave]     bracket form, may appear anywhere in the text
    .wave.         dot form, must stand alone between whitespace

Names are 1-32 characters of ``a-z0-9_-`` and are matched case-insensitively.
This module only parses; whether a name exists is the catalog's business.
"""
import re
from typing import Iterator, NamedTuple, Optional

NAME_PATTERN = r"[a-z0-9_-]{1,32}"

_BRACKET = rf"\[gif:(?P<bracket>{NAME_PATTERN})\]"
_DOT = rf"(?<!\S)\.(?P<dot>{NAME_PATTERN})\.(?!\S)"

_WHOLE_RE = re.compile(rf"^(?:\[gif:(?P<bracket>{NAME_PATTERN})\]|\.(?P<dot>{NAME_PATTERN})\.)$", re.IGNORECASE)
_EMBEDDED_RE = re.compile(rf"{_BRACKET}|{_DOT}", re.IGNORECASE)


class ShortcodeMatch(NamedTuple):
    """A shortcode occurrence inside a piece of text."""
    name: str
    start: int
    end: int


def _name(match: re.Match) -> str:
    return (match.group("bracket") or match.group("dot")).lower()


def whole_shortcode(text: Optional[str]) -> Optional[str]:
    """
    Return the shortcode name if the whole (trimmed) text is one shortcode.

    Example:
        >>> whole_shortcode("  [GIF:Wave] ")
        'wave'
        >>> whole_shortcode("hi [gif:wave]") is None
        True
    """
    if not text:
        return None
    match = _WHOLE_RE.match(text.strip())
    return _name(match) if match else None


def find_shortcodes(text: Optional[str]) -> Iterator[ShortcodeMatch]:
    """Yield embedded shortcode occurrences left to right."""
    if not text:
        return
    for match in _EMBEDDED_RE.finditer(text):
        yield ShortcodeMatch(_name(match), match.start(), match.end())


def excise(text: str, occurrence: ShortcodeMatch) -> str:
    """
    Remove one occurrence from the text.

    Whitespace on both sides of the cut collapses to a single space and the
    result is trimmed.

    Example:
        >>> excise("hi [gif:wave] there", next(find_shortcodes("hi [gif:wave] there")))
        'hi there'
    """
    before = text[:occurrence.start].rstrip()
    after = text[occurrence.end:].lstrip()
    if before and after:
        return f"{before} {after}"
    return (before or after).strip()
