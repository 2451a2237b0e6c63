"""
REST API module for WorkLoom.

Provides FastAPI endpoints for:
- Analysis run lifecycle (create/start/pause/cancel/retry/delete)
- Run status, work units, AI reviews and reports
- Manager notes and report finalization
"""
