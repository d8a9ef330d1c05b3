"""
API Route modules.

- labs: Lab upload, progress polling, results, search
"""

from backend.api.labs import router as labs_router

__all__ = [
    'labs_router',
]
