"""Runtime orchestration (worker processes, queue, batches, reports).

This layer is responsible for:
- spawning worker processes and parsing their stdout protocol
- the single-lane queue for ad-hoc runs and bounded batch execution
- persisting run outcomes and merging per-run reports

It should remain independent from the HTTP layer (`uatcms.api`), so both CLI and
API can reuse the same execution logic.
"""
