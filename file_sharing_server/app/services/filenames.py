import mimetypes
from pathlib import PurePath
from typing import Union

import regex

DEFAULT_MIME_TYPE = "application/octet-stream"

# Anything outside Unicode Alphabetic/Numeric and ". - _ space" is replaced
_UNSAFE_CHARACTER = regex.compile(r"[^\p{Alphabetic}\p{N}.\- _]")


def sanitize_filename(name: str) -> str:
    """Replace every character that is not alphanumeric, '.', '-', '_' or a
    space with '_'.

    Alphanumeric follows the Unicode Alphabetic property, so combining vowel
    signs of scripts like Devanagari or Arabic are kept. The result always
    has the same length as the input. Empty input gives an empty string;
    callers choose a fallback name.
    """
    return _UNSAFE_CHARACTER.sub("_", name)


def guess_mime_type(path: Union[str, PurePath]) -> str:
    """Guess a content type from the file extension."""
    guessed_type, _ = mimetypes.guess_type(str(path))
    return guessed_type or DEFAULT_MIME_TYPE
