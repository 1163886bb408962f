"""Local matching helpers for inbox and messaging trigger filters.

Provider-side search (Gmail ``q`` syntax, Telegram ``offset``) narrows the
candidate set; these helpers then apply the sender / subject / text filters
from the trigger configuration deterministically so they can be unit tested
without a provider.

Supported inbox filter keys (all optional):

• ``from_contains``      – List[str]; any substring match on the sender.
• ``subject_contains``   – List[str]; same for the subject.
• ``label_include``      – List[str]; message must carry *all* labels.
• ``label_exclude``      – List[str]; message must carry *none*.

If a filter is set but the relevant field is *missing* the item does not
match.
"""

from __future__ import annotations

import logging
from typing import Any
from typing import Dict
from typing import List

logger = logging.getLogger(__name__)


def _contains_any(haystack: str | None, needles: List[str]) -> bool:  # noqa: D401 - helper
    if haystack is None:
        return False
    lower = haystack.lower()
    return any(n.lower() in lower for n in needles)


def matches(email: Dict[str, Any], filters: Dict[str, Any] | None) -> bool:  # noqa: D401 - main helper
    """Return ``True`` if *email* satisfies *filters*.

    ``email`` is the normalised shape produced by the inbox connector::

        {"id": "abc", "from": "foo@bar.com", "subject": "Hello",
         "label_ids": ["INBOX"]}
    """

    if not filters:
        return True

    label_ids = set(email.get("label_ids") or [])

    include = filters.get("label_include") or []
    if include and not set(include).issubset(label_ids):
        return False

    exclude = filters.get("label_exclude") or []
    if exclude and set(exclude).intersection(label_ids):
        return False

    if filters.get("from_contains"):
        if not _contains_any(email.get("from"), filters["from_contains"]):
            return False

    if filters.get("subject_contains"):
        if not _contains_any(email.get("subject"), filters["subject_contains"]):
            return False

    return True


def message_matches(message: Dict[str, Any], filters: Dict[str, Any] | None) -> bool:
    """Chat-message counterpart of :func:`matches`.

    Keys: ``chat_id`` (exact), ``from_username`` (case-insensitive exact) and
    ``text_contains`` (any substring).
    """

    if not filters:
        return True

    chat_id = filters.get("chat_id")
    if chat_id not in (None, "") and str(message.get("chat_id")) != str(chat_id):
        return False

    username = filters.get("from_username")
    if username:
        sender = (message.get("from") or "").lstrip("@").lower()
        if sender != username.lstrip("@").lower():
            return False

    if filters.get("text_contains"):
        if not _contains_any(message.get("text"), filters["text_contains"]):
            return False

    return True
