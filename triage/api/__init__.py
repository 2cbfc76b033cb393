"""HTTP API (FastAPI) over the verdict engine."""
