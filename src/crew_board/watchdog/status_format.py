"""Recognise the team's status-update format in chat.

A valid status update references a task and carries all three lines::

    task-1700000000000-abc123
    1) Shipped: ...
    2) Blocker: ...
    3) Next: ...
"""

from __future__ import annotations

import re

from ..collab import TASK_ID_RE

_SHIPPED = re.compile(r"1\)\s*(?:\*\*)?\s*shipped\s*(?:\*\*)?\s*:", re.IGNORECASE)
_BLOCKER = re.compile(r"2\)\s*(?:\*\*)?\s*blocker\s*(?:\*\*)?\s*:", re.IGNORECASE)
_NEXT = re.compile(r"3\)\s*(?:\*\*)?\s*next\s*(?:\*\*)?\s*:", re.IGNORECASE)

# "1) Shipped: <something real>"
_SHIPPED_VALUE = re.compile(r"shipped\s*(?:\*\*)?\s*:(?![ \t]*(?:none|nothing|n/a)\b)[ \t]*[^\s<]", re.IGNORECASE)

OPEN_BLOCKER_RE = re.compile(r"\bblocker\s*(?:\*\*)?\s*:(?![ \t]*(?:none|nothing|no|n/a|na)\b)[ \t]*[^\s<]", re.IGNORECASE)
CLEARED_BLOCKER_RE = re.compile(r"\bblocker\s*(?:\*\*)?\s*:[ \t]*(?:none|nothing|no|n/a|na)\b", re.IGNORECASE)

STATUS_TEMPLATE = "\n".join([
    "1) Shipped: <artifact/commit/file>",
    "2) Blocker: <none or explicit blocker>",
    "3) Next: <next deliverable + ETA>",
])


def is_status_update(content: str) -> bool:
    text = content or ""
    return bool(
        TASK_ID_RE.search(text)
        and _SHIPPED.search(text)
        and _BLOCKER.search(text)
        and _NEXT.search(text)
    )


def reports_shipped(content: str) -> bool:
    """True for a status line that actually shipped something."""
    return bool(_SHIPPED.search(content or "") and _SHIPPED_VALUE.search(content or ""))


def reports_open_blocker(content: str) -> bool:
    return bool(OPEN_BLOCKER_RE.search(content or ""))


def reports_cleared_blocker(content: str) -> bool:
    return bool(CLEARED_BLOCKER_RE.search(content or ""))
