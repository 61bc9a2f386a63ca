"""API v1 router aggregating all endpoint routers.

Knowledge:
  /api/v1/knowledge/search - ranked context for a query
  /api/v1/knowledge/status - knowledge base and embedding state
  /api/v1/knowledge/reload - drop cached knowledge base and query vectors
"""

from fastapi import APIRouter

from christy.api.v1.endpoints import knowledge

api_router = APIRouter()

api_router.include_router(knowledge.router, prefix="/knowledge", tags=["knowledge"])
