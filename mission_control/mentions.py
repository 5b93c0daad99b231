"""
Mission Control mention parsing

Finds `@name` tokens in free text. A token is `@` followed by a word character
and then any mix of word characters and hyphens (`@agent-name`, `@Bob_2`).
Extraction is pure text work; resolving names to agents happens in notifier.py.
"""
import re

MENTION_PATTERN: re.Pattern[str] = re.compile(r"@(\w+[-\w]*)")

# Matches a token that highlight_mentions() already wrapped, or a bare token.
_HIGHLIGHT_PATTERN: re.Pattern[str] = re.compile(
    r'(<span class="mention">@[-\w]+</span>)|@(\w+[-\w]*)'
)

HIGHLIGHT_TEMPLATE = '<span class="mention">@{name}</span>'


def extract_mentions(text: str) -> list[str]:
    """
    Return mentioned names (without the `@`) in first-seen order, de-duplicated.

    Matching is case-sensitive here: `@Alice` and `@alice` are two candidates.
    """
    if not text or "@" not in text:
        return []
    seen: dict[str, None] = {}
    for match in MENTION_PATTERN.finditer(text):
        seen.setdefault(match.group(1), None)
    return list(seen)


def highlight_mentions(text: str) -> str:
    """
    Wrap every mention token in an emphasis span for display.

    Idempotent: tokens that are already wrapped are left as they are, so
    highlight_mentions(highlight_mentions(t)) == highlight_mentions(t).
    """
    if not text or "@" not in text:
        return text

    def _wrap(match: re.Match[str]) -> str:
        if match.group(1):
            return match.group(1)
        return HIGHLIGHT_TEMPLATE.format(name=match.group(2))

    return _HIGHLIGHT_PATTERN.sub(_wrap, text)
