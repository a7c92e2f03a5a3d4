from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from threadline.config import settings
from threadline.logging_config import get_logger

logger = get_logger("retrieval_service")


@dataclass
class RetrievalResult:
    can_respond: bool
    score: Optional[float]
    reason: str
    documents: List[dict] = field(default_factory=list)


def get_embedding(text: str) -> List[float]:
    """Get embedding from the embedding service. Raises ValueError on an unusable response."""
    with httpx.Client(timeout=settings.llm_timeout_seconds) as client:
        response = client.post(settings.embedding_url, json={"inputs": text})
        response.raise_for_status()
        data = response.json()

    # Handle different response formats
    if isinstance(data, list) and data and isinstance(data[0], list):
        data = data[0]
    elif isinstance(data, dict):
        data = data.get("embedding") or data.get("embeddings")
    if not isinstance(data, list) or not data or not all(isinstance(v, (int, float)) for v in data):
        raise ValueError("Embedding service returned no usable vector")
    return data


def search_documents(query: str, limit: int = 5) -> List[dict]:
    """Search training documents in Qdrant. Raises httpx.HTTPError or ValueError on transport or API failure."""
    embedding = get_embedding(query)
    headers = {"api-key": settings.qdrant_api_key} if settings.qdrant_api_key else {}

    with httpx.Client(timeout=settings.llm_timeout_seconds) as client:
        response = client.post(
            f"{settings.qdrant_host}/collections/{settings.qdrant_collection}/points/search",
            headers=headers,
            json={"vector": embedding, "limit": limit, "with_payload": True},
        )
        response.raise_for_status()
        data = response.json()

    if not isinstance(data, dict) or not isinstance(data.get("result") or [], list):
        raise ValueError("Vector search returned an unexpected body")

    results = []
    for point in data.get("result") or []:
        if not isinstance(point, dict):
            continue
        payload = point.get("payload") if isinstance(point.get("payload"), dict) else {}
        metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}
        results.append(
            {
                "score": point.get("score"),
                "text": payload.get("content"),
                "source": metadata.get("doc_name"),
                "metadata": metadata,
            }
        )
    return results


def retrieve_and_guard(
    query: str,
    similarity_threshold: Optional[float] = None,
    top_k: int = 5,
) -> RetrievalResult:
    """
    Retrieve grounding documents and decide whether the AI may answer from them.

    Never raises: transport and API failures come back as can_respond=False
    with the error as the reason.
    """
    threshold = settings.retrieval_threshold if similarity_threshold is None else similarity_threshold

    try:
        documents = search_documents(query, limit=top_k)
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"Retrieval failed: {e}", extra={"context": {"query": query[:50]}})
        return RetrievalResult(can_respond=False, score=None, reason=f"Error during retrieval: {e}")
    except Exception as e:
        logger.exception("Retrieval crashed", extra={"context": {"query": query[:50]}})
        return RetrievalResult(can_respond=False, score=None, reason=f"Error during retrieval: {e}")

    if not documents:
        return RetrievalResult(can_respond=False, score=None, reason="No relevant training found for this topic")

    scores = [d["score"] for d in documents if isinstance(d.get("score"), (int, float))]
    if not scores:
        return RetrievalResult(
            can_respond=False, score=None, reason="No similarity scores available for retrieved documents"
        )

    max_score = max(scores)
    if max_score < threshold:
        return RetrievalResult(
            can_respond=False,
            score=max_score,
            reason=f"Highest similarity score ({max_score:.2f}) is below threshold ({threshold})",
        )

    relevant = [d for d in documents if (d.get("score") or 0) >= threshold]
    logger.info(f"Retrieval found {len(relevant)} documents for '{query[:30]}...'")
    return RetrievalResult(
        can_respond=True,
        score=max_score,
        reason=f"Found {len(relevant)} relevant training document(s) with similarity >= {threshold}",
        documents=relevant,
    )


def format_grounding_context(documents: List[dict]) -> str:
    """Format retrieved documents for the LLM prompt."""
    if not documents:
        return ""

    context_parts = ["Relevant information from the knowledge base:"]
    for i, d in enumerate(documents, 1):
        text = d.get("text", "")
        if text:
            context_parts.append(f"{i}. {text}")

    return "\n".join(context_parts)
