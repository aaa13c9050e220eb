"""TypedDicts for filter specifications."""

from __future__ import annotations

from collections.abc import Collection
from typing import Literal, TypeAlias, TypedDict

DueBucket: TypeAlias = Literal["all", "overdue", "today", "this_week", "no_due_date"]
GroupBy: TypeAlias = Literal["none", "daily", "weekly", "monthly", "sprint"]


class FilterSpec(TypedDict, total=False):
    """Declarative filter over the bug collection.

    A missing key behaves exactly like ``"all"``.  ``tags`` is matched by
    intersection; an empty selection places no constraint.
    """

    status: str
    severity: str
    assignee: str
    reporter: str
    environment: str
    sprint: str
    category: str
    frequency: str
    tags: Collection[str]
    search: str
    due: DueBucket
