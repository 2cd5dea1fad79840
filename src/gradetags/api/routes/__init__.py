"""
API routes for gradetags.
"""

from gradetags.api.routes import submissions, tags

__all__ = [
    "submissions",
    "tags",
]
