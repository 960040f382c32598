"""
FastAPI routers for the compilation server.
"""

from clipstitch.routers import compilation, health, uploads

__all__ = ["health", "compilation", "uploads"]
