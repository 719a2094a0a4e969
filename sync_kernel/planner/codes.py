"""Parent code extraction from free-text project names."""

import re
from typing import Optional

CODE_PATTERNS = (
    re.compile(r"^([A-Z]{2,3}\d{3,6})"),    # NY25001, ABC123456
    re.compile(r"^([A-Z]+\d+)"),            # ED1, PROJECT42
)
_TOKEN_SEPARATORS = re.compile(r"[\s\-_:]")


def extract_parent_code(name: Optional[str]) -> str:
    """
    Deterministic code for a parent name.

    Tries each pattern in order, then falls back to the first token before a
    separator, then to the whole (stripped) name. Empty input gives "".
    """
    if not name or not isinstance(name, str):
        return ""
    text = name.strip()
    for pattern in CODE_PATTERNS:
        match = pattern.match(text)
        if match:
            return match.group(1)
    first = _TOKEN_SEPARATORS.split(text, maxsplit=1)[0]
    return first or text


def code_key(name: Optional[str]) -> str:
    """Case-insensitive matching key for a parent name or code."""
    return extract_parent_code(name).upper()
