"""
Features package — each sub-package encapsulates a self-contained feature.

  features/beads/  — stage audit trail of build jobs (optional Postgres store)
  features/jobs/   — dedup registry, progress relay and web job store
"""
