"""
Beads feature — stage audit trail for build jobs.

Public API:
    from features.beads import BeadTracker, Bead, BeadStatus, StageCategory
    from features.beads import db as bead_db
"""

from features.beads.models import Bead, BeadStatus, StageCategory
from features.beads.tracker import BeadTracker

__all__ = ["Bead", "BeadStatus", "BeadTracker", "StageCategory"]
