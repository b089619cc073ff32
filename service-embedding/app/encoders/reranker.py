"""Cross-encoder reranking.

Scores every ``(query, document)`` pair in a single forward pass; there is no
batching or caching here.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence
import torch
import structlog

from ..pipelines.executor import AsyncCaller
from .engine_registry import TEXT_RANKING, EngineRegistry

logger = structlog.get_logger("embedding_service.reranker")


def score_pairs(engine: Any, query: str, documents: Sequence[str]) -> List[float]:
    """Sigmoid relevance score of ``query`` against each document."""
    features = engine.tokenizer(
        [query] * len(documents),
        list(documents),
        padding=True,
        truncation=True,
        return_tensors="pt",
    )
    features = {name: tensor.to(engine.model.device) for name, tensor in features.items()}
    with torch.no_grad():
        logits = engine.model(**features).logits
    return torch.sigmoid(logits)[:, 0].tolist()


class RerankerService:
    """Ranks documents against a query with a cross-encoder.

    Parameters
    - registry: ``EngineRegistry`` providing the text-ranking engine
    - caller: ``AsyncCaller`` used to run (and retry) the scoring call
    - model: Cross-encoder identifier
    - top_k: Maximum number of results returned
    - return_documents: Include the document text in each result
    """

    def __init__(
        self,
        registry: EngineRegistry,
        caller: Optional[AsyncCaller] = None,
        model: str = "mixedbread-ai/mxbai-rerank-xsmall-v1",
        top_k: int = 10,
        return_documents: bool = False
    ):
        self.registry = registry
        self.caller = caller or AsyncCaller()
        self.model = model
        self.top_k = top_k
        self.return_documents = return_documents

    async def rank(self, query: str, documents: Sequence[str]) -> List[Dict[str, Any]]:
        """Return ``{corpus_id, score[, text]}`` entries, best first."""
        if not documents:
            return []

        async def run() -> List[float]:
            engine = await self.registry.get(TEXT_RANKING, self.model)
            return await asyncio.to_thread(score_pairs, engine, query, documents)

        try:
            scores = await self.caller.call(run, operation_name=f"rerank_{self.model}")
        except Exception as e:
            logger.error("Reranking failed", model_name=self.model, error=str(e))
            raise

        results = []
        for corpus_id, score in enumerate(scores):
            result: Dict[str, Any] = {"corpus_id": corpus_id, "score": score}
            if self.return_documents:
                result["text"] = documents[corpus_id]
            results.append(result)

        results.sort(key=lambda r: r["score"], reverse=True)
        return results[:self.top_k]
