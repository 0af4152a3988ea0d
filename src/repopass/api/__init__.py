"""FastAPI front end for RepoPass."""
from .app import create_app

__all__ = ["create_app"]
