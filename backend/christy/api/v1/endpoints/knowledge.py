"""Knowledge retrieval endpoints."""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from christy.knowledge.retriever import KnowledgeRetriever

router = APIRouter()


def get_retriever(request: Request) -> KnowledgeRetriever:
    """Return the retriever built during application startup."""
    return request.app.state.knowledge_retriever


class KnowledgeHit(BaseModel):
    id: str
    source: str
    text: str
    metadata: dict[str, Any]
    score: float


class KnowledgeSearchResponse(BaseModel):
    query: str
    mode: str
    reason: str | None
    results: list[KnowledgeHit]
    context: str


class KnowledgeStatusResponse(BaseModel):
    status: str
    entry_count: int
    embedded_count: int
    knowledge_base_model: str | None
    embedding_enabled: bool
    selection_state: str | None
    selected_model: str | None
    query_cache_size: int


@router.get("/search", response_model=KnowledgeSearchResponse)
async def search_knowledge(
    retriever: Annotated[KnowledgeRetriever, Depends(get_retriever)],
    q: str = Query(..., min_length=1, description="Customer query"),
    top_k: int | None = Query(None, ge=1, le=50, description="Maximum results"),
) -> KnowledgeSearchResponse:
    outcome = await retriever.retrieve(q, top_k)
    return KnowledgeSearchResponse(
        query=q,
        mode=outcome.mode.value,
        reason=outcome.reason,
        results=[
            KnowledgeHit(
                id=result.entry.id,
                source=result.entry.source.value,
                text=result.entry.text,
                metadata=result.entry.metadata,
                score=round(result.score, 6),
            )
            for result in outcome.results
        ],
        context=retriever.format_context(outcome.entries),
    )


@router.get("/status", response_model=KnowledgeStatusResponse)
async def knowledge_status(
    retriever: Annotated[KnowledgeRetriever, Depends(get_retriever)],
) -> KnowledgeStatusResponse:
    knowledge_base = await retriever.knowledge_base()
    client = retriever.client
    return KnowledgeStatusResponse(
        status=knowledge_base.status.value,
        entry_count=len(knowledge_base),
        embedded_count=sum(1 for e in knowledge_base.entries if e.is_matchable),
        knowledge_base_model=knowledge_base.embedding_model,
        embedding_enabled=retriever.embedding_enabled,
        selection_state=client.selection.state.value if client else None,
        selected_model=client.model if client else None,
        query_cache_size=len(retriever.cache),
    )


@router.post("/reload", response_model=KnowledgeStatusResponse)
async def reload_knowledge(
    retriever: Annotated[KnowledgeRetriever, Depends(get_retriever)],
) -> KnowledgeStatusResponse:
    retriever.reload()
    return await knowledge_status(retriever)
