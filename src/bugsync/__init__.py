"""Bugsync — live bug-tracking sync and mutation coordination engine."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("bugsync")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from bugsync.models import Bug, Sprint, TeamMember
from bugsync.tracker import BugTracker, TrackerState

__all__ = ["Bug", "BugTracker", "Sprint", "TeamMember", "TrackerState", "__version__"]
