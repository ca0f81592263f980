"""Retrieval collaborators for ``rag`` nodes.

BM25 scoring follows the standard Okapi formulation with k1=1.5, b=0.75.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from flowkernel.logging import get_logger

logger = get_logger(__name__)

BM25_K1 = 1.5
BM25_B = 0.75

RETRIEVAL_METHODS = ("similarity", "keyword")


class RetrievalService(Protocol):
    """Interface for document retrieval; ``retrieve`` may be sync or async."""

    def retrieve(self, query: str, top_k: int, *, method: str = "similarity") -> Any: ...


def tokenize_text(text: str) -> List[str]:
    return re.findall(r"\w+", text.lower())


def compute_bm25_scores(
    query_tokens: Sequence[str],
    documents: List[List[str]],
    k1: float = BM25_K1,
    b: float = BM25_B,
) -> List[float]:
    """Compute BM25 relevance scores for tokenized documents.

    Args:
        query_tokens: Tokenized query terms
        documents: List of tokenized documents
        k1: Term frequency saturation parameter
        b: Document length normalization parameter

    Returns:
        List of scores aligned with ``documents``
    """
    if not query_tokens or not documents:
        return [0.0 for _ in documents]

    N = len(documents)
    avgdl = sum(len(doc) for doc in documents) / float(N)

    doc_freq: dict[str, int] = {}
    for doc in documents:
        for tok in set(doc):
            doc_freq[tok] = doc_freq.get(tok, 0) + 1

    scores: List[float] = []
    for doc in documents:
        tf: dict[str, int] = {}
        for tok in doc:
            tf[tok] = tf.get(tok, 0) + 1

        score = 0.0
        for tok in query_tokens:
            df = doc_freq.get(tok, 0)
            if df == 0:
                continue
            idf = math.log(1 + (N - df + 0.5) / (df + 0.5))
            freq = tf.get(tok, 0)
            denom = freq + k1 * (1 - b + b * (len(doc) / (avgdl or 1.0)))
            score += idf * (freq * (k1 + 1)) / denom if denom else 0.0
        scores.append(score)

    return scores


def _keyword_scores(query_tokens: Sequence[str], documents: List[List[str]]) -> List[float]:
    wanted = set(query_tokens)
    if not wanted:
        return [0.0 for _ in documents]
    return [len(wanted & set(doc)) / len(wanted) for doc in documents]


@dataclass
class Document:
    id: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class InMemoryRetrievalService:
    """Ranks an in-process document collection against a query.

    ``similarity`` ranks by BM25 and ``keyword`` by the share of query terms a
    document contains. Documents scoring zero are never returned.
    """

    def __init__(self, documents: Optional[Iterable[Document | dict]] = None) -> None:
        self._documents: List[Document] = []
        self._tokens: List[List[str]] = []
        self.calls: List[dict] = []
        for doc in documents or []:
            self.add(doc)

    def add(self, document: Document | dict) -> Document:
        if isinstance(document, dict):
            document = Document(
                id=str(document.get("id") or f"doc-{len(self._documents) + 1}"),
                content=str(document.get("content", "")),
                metadata=dict(document.get("metadata") or {}),
            )
        self._documents.append(document)
        self._tokens.append(tokenize_text(document.content))
        return document

    def __len__(self) -> int:
        return len(self._documents)

    def retrieve(self, query: str, top_k: int, *, method: str = "similarity") -> dict:
        self.calls.append({"query": query, "top_k": top_k, "method": method})
        if top_k <= 0:
            raise ValueError("top_k must be positive")
        if method not in RETRIEVAL_METHODS:
            logger.warning("retrieval_method_unknown", method=method, fallback="similarity")
            method = "similarity"

        query_tokens = tokenize_text(query)
        if method == "keyword":
            scores = _keyword_scores(query_tokens, self._tokens)
        else:
            scores = compute_bm25_scores(query_tokens, self._tokens)

        ranked = sorted(
            (
                (score, position)
                for position, score in enumerate(scores)
                if score > 0
            ),
            key=lambda item: (-item[0], item[1]),
        )[:top_k]
        documents = [
            {
                "id": self._documents[position].id,
                "content": self._documents[position].content,
                "score": round(score, 6),
                "metadata": dict(self._documents[position].metadata),
            }
            for score, position in ranked
        ]
        logger.debug(
            "retrieval_completed",
            method=method,
            top_k=top_k,
            returned=len(documents),
            corpus=len(self._documents),
        )
        return {"documents": documents, "method": method}
