"""Phone number extraction from order chat transcripts.

Recognizes Russian mobile numbers written with a ``+7`` prefix, an ``8``
prefix, or as a bare 10-digit local number, with optional spaces, dashes
and parentheses between digit groups. Every hit is rewritten to the
canonical ``+7XXXXXXXXXX`` form.

Patterns are tried in order and a later pattern may not claim characters an
earlier one already matched, so ``+7 999 123 45 67`` yields one number rather
than a second bare-form hit on its tail. The ``8`` and bare forms must also
stand on digit boundaries so they never fire inside a longer digit run.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from bybit_p2p_sync.exchange.models import ChatMessage

CANONICAL_PREFIX = "+7"
CANONICAL_LENGTH = 12

_SEP = r"[\s-]?"

PHONE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(rf"\+7\s?\(?(\d{{3}})\)?{_SEP}(\d{{3}}){_SEP}(\d{{2}}){_SEP}(\d{{2}})(?!\d)"),
    re.compile(rf"(?<!\d)8\s?\(?(\d{{3}})\)?{_SEP}(\d{{3}}){_SEP}(\d{{2}}){_SEP}(\d{{2}})(?!\d)"),
    re.compile(rf"(?<![\d+])(\d{{3}}){_SEP}(\d{{3}}){_SEP}(\d{{2}}){_SEP}(\d{{2}})(?!\d)"),
)

_NON_PHONE_CHARS = re.compile(r"[^\d+]")


def normalize_phone(groups: Iterable[str]) -> str | None:
    """Build the canonical form from captured digit groups.

    Returns None unless the result is exactly ``+7`` followed by 10 digits.
    """
    candidate = _NON_PHONE_CHARS.sub("", CANONICAL_PREFIX + "".join(groups))
    if len(candidate) != CANONICAL_LENGTH:
        return None
    return candidate


def _overlaps(span: tuple[int, int], taken: list[tuple[int, int]]) -> bool:
    start, end = span
    return any(start < t_end and t_start < end for t_start, t_end in taken)


def extract_from_text(text: str) -> list[str]:
    """Canonical numbers found in one message, in order of appearance."""
    taken: list[tuple[int, int]] = []
    found: list[tuple[int, str]] = []

    for pattern in PHONE_PATTERNS:
        for match in pattern.finditer(text):
            span = match.span()
            if _overlaps(span, taken):
                continue
            phone = normalize_phone(match.groups())
            if phone is None:
                continue
            taken.append(span)
            found.append((span[0], phone))

    found.sort(key=lambda item: item[0])
    return [phone for _, phone in found]


def extract_phone_numbers(messages: Iterable[ChatMessage]) -> list[str]:
    """Deduplicated canonical phone numbers across a chat transcript.

    Only plain-text messages are inspected. Numbers are returned in
    first-seen order.
    """
    seen: dict[str, None] = {}
    for message in messages:
        if not message.is_plain_text:
            continue
        for phone in extract_from_text(message.message):
            seen.setdefault(phone, None)
    return list(seen)
