"""HTTP API layer (FastAPI).

This module exposes a small, versioned `/api/v1` surface that the WebUI can use to:
- submit single runs and whole-release batches
- follow queue position, live progress and batch status
- fetch persisted run records and step results

The API is intentionally thin: core behavior lives in `uatcms.runtime` and
`uatcms.storage`.
"""
