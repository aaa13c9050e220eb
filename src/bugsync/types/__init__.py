# IMPORT CONSTRAINT: types/ modules must only import from typing, stdlib, and each other.
# NEVER import from models.py, tracker.py, or any component module. Doing so creates circular imports.
"""Typed return-value contracts for bugsync components and API layers."""

from __future__ import annotations

from bugsync.types.api import BugMetrics, BulkResultDict, ErrorDict, OutcomeDict, StateResponse
from bugsync.types.core import BugDict, ISOTimestamp, ProjectConfig, SprintDict, TeamMemberDict
from bugsync.types.filters import DueBucket, FilterSpec, GroupBy

__all__ = [
    "BugDict",
    "BugMetrics",
    "BulkResultDict",
    "DueBucket",
    "ErrorDict",
    "FilterSpec",
    "GroupBy",
    "ISOTimestamp",
    "OutcomeDict",
    "ProjectConfig",
    "SprintDict",
    "StateResponse",
    "TeamMemberDict",
]
