"""
Monitoring module for the legacy migration engine.

Progress tracking with resource sampling, JSON run reports and the optional
run bookkeeping table.
"""

from .progress_tracker import ProgressTracker, MigrationStats

__all__ = [
    'ProgressTracker',
    'MigrationStats'
]
