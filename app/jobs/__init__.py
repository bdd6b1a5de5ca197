"""
Maintenance Jobs Module

On-demand administrative sweeps:
- Orphan sweep (return records whose NCR is gone or canceled)
- Repair sweep (active NCRs missing their return record)
"""

from app.jobs.reconciliation import (
    find_missing,
    find_orphans,
    run_orphan_sweep,
    run_repair_sweep,
)

__all__ = [
    "find_missing",
    "find_orphans",
    "run_orphan_sweep",
    "run_repair_sweep",
]
