"""FastAPI dependencies for accessing app state."""

from fastapi import Request

from identity_sync.engine import IdentitySyncEngine
from identity_sync.settings import Settings


def get_settings(request: Request) -> Settings:
    """
    Get application settings from request state.

    Parameters
    ----------
    request : Request
        FastAPI request object

    Returns
    -------
    Settings
        Application settings instance
    """
    return request.app.state.settings


def get_engine(request: Request) -> IdentitySyncEngine:
    """
    Get the sync engine from request state.

    The engine is created once in ``create_app`` and initialized by the startup hook;
    every route reaches the stores, orchestrator and scheduler through it.

    Parameters
    ----------
    request : Request
        FastAPI request object

    Returns
    -------
    IdentitySyncEngine
        Engine instance shared by all requests
    """
    return request.app.state.engine
