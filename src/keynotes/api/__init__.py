# Local API - FastAPI backend for the Keynotes UI

from .main import app, start_api_server
from .services import KeynotesServices, services

__all__ = [
    "app",
    "start_api_server",
    "KeynotesServices",
    "services",
]
