"""Knowledge base module for RAG-based context retrieval.

This module compiles sales material (marketing text, chat transcripts,
price sheets) into an embedded knowledge base and retrieves the entries
most relevant to a customer query, degrading to lexical scoring when the
embedding provider is unavailable.
"""

from christy.knowledge.models import (
    KnowledgeBase,
    KnowledgeEntry,
    RetrievalMode,
    RetrievalOutcome,
    RetrievalResult,
    SourceKind,
)
from christy.knowledge.retriever import KnowledgeRetriever, build_knowledge_retriever

__all__ = [
    "KnowledgeBase",
    "KnowledgeEntry",
    "RetrievalMode",
    "RetrievalOutcome",
    "RetrievalResult",
    "SourceKind",
    "KnowledgeRetriever",
    "build_knowledge_retriever",
]
