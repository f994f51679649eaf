"""API route modules."""

from waflens.api.routes.reindex import router as reindex_router
from waflens.api.routes.rollups import router as rollups_router
from waflens.api.routes.upload import router as upload_router

__all__ = [
    "reindex_router",
    "rollups_router",
    "upload_router",
]
