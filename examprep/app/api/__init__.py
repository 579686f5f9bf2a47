"""API endpoints package for examprep."""

from examprep.app.api.practice_sessions import router as practice_sessions_router

__all__ = [
    "practice_sessions_router",
]
