"""HTTP API layer (FastAPI).

A small, versioned `/api/v1` surface to:
- launch a run of a registered task type
- poll a run's status, output and message log
- list a caller's runs and request cancellation

The API stays thin: core behavior lives in `agentrun/runtime` and `agentrun/storage`.
"""
