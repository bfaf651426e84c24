import re

_TAGS = re.compile(r'<[^>]*>')
_LINE_BREAKS = re.compile(r'[\r\n\t\x00-\x1f]+')


def sanitize_string(v: str) -> str:
    """Clean a free-text value that ends up in a mail header (display names)."""
    if not isinstance(v, str):
        return v
    v = _TAGS.sub('', v)
    # Header injection: a display name must stay on one line
    v = _LINE_BREAKS.sub(' ', v)
    return v.strip()
