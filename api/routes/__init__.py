# api/routes/__init__.py
"""
API route handlers organized by domain.
"""

from api.routes.health import router as health_router
from api.routes.imports import router as imports_router

__all__ = [
    "health_router",
    "imports_router",
]
