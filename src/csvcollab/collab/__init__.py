"""Collaborative workspace management.

This package defines the per-user workspace session that drives the
locking protocol, plus progress statistics derived from the shared rows.
"""

from .workspace import Workspace  # noqa: F401
from .stats import UserStatistics, DatasetProgress, collect_user_statistics  # noqa: F401
