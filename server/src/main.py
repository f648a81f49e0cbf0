from __future__ import annotations

from fastapi import FastAPI

from .config import Settings
from .core.app import create_app

settings = Settings()
app = create_app(settings)


def get_application() -> FastAPI:
    """Build a fresh application from the current environment."""
    return create_app(Settings())
