"""
FastAPI dependencies for the engine API.
"""

from fastapi import HTTPException, Request, status

from qflow.engine import Engine


def get_engine(request: Request) -> Engine:
    """Engine created by the app lifespan."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Engine is not running",
        )
    return engine
