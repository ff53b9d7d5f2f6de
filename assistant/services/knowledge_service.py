import json
import math
import os
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from assistant.config import settings
from assistant.errors import RetrievalError, UpstreamAIError
from assistant.logging_config import get_logger
from assistant.services.ai_service import generate_embedding

logger = get_logger("knowledge_service")


@dataclass
class KnowledgeResult:
    content: str
    source: str
    similarity: float


def cosine_similarity(a: List[float], b: List[float]) -> float:
    """dot(a, b) / (|a| * |b|); 0.0 when either vector has zero norm."""
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class KnowledgeBase:
    """Per-category embedded corpora, loaded lazily from `{base_dir}/{category}.json`.

    A rebuild in another process rewrites the file; the next load notices the
    new mtime and size and reads it again.
    """

    def __init__(
        self,
        base_dir: str,
        embed: Callable[[str], Awaitable[List[float]]],
        top_k: int = 3,
        max_categories: int = 16,
    ):
        self.base_dir = base_dir
        self._embed = embed
        self.top_k = top_k
        self.max_categories = max(1, max_categories)
        self._corpora: "OrderedDict[str, tuple[Optional[tuple[int, int]], list[dict]]]" = OrderedDict()

    def corpus_path(self, category: str) -> str:
        return os.path.join(self.base_dir, f"{category}.json")

    def _read_corpus(self, category: str) -> list[dict]:
        path = self.corpus_path(category)
        if not os.path.exists(path):
            logger.warning(f"Knowledge base not found for category: {category}")
            return []
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load knowledge base {path}: {e}")
            return []
        if not isinstance(data, list):
            logger.error(f"Knowledge base {path} is not a list")
            return []
        chunks = [item for item in data if isinstance(item, dict) and item.get("embedding")]
        logger.info(f"Knowledge base loaded: {category} ({len(chunks)} chunks)")
        return chunks

    def _signature(self, category: str) -> Optional[tuple[int, int]]:
        try:
            stat = os.stat(self.corpus_path(category))
        except OSError:
            return None
        return stat.st_mtime_ns, stat.st_size

    def load(self, category: str) -> list[dict]:
        """Cached corpus for the category, re-read when its file changed on disk since the last load."""
        signature = self._signature(category)
        cached = self._corpora.get(category)
        if cached is not None and cached[0] == signature:
            self._corpora.move_to_end(category)
            return cached[1]
        if cached is not None:
            logger.info(f"Knowledge base changed on disk, reloading: {category}")

        corpus = self._read_corpus(category)
        self._corpora[category] = (signature, corpus)
        self._corpora.move_to_end(category)
        while len(self._corpora) > self.max_categories:
            evicted, _ = self._corpora.popitem(last=False)
            logger.debug(f"Knowledge base evicted from cache: {evicted}")
        return corpus

    def invalidate(self, category: Optional[str] = None) -> None:
        if category is None:
            self._corpora.clear()
        else:
            self._corpora.pop(category, None)

    def cached_categories(self) -> list[str]:
        return list(self._corpora.keys())

    async def search(self, query: str, category: str) -> List[KnowledgeResult]:
        """Top-k chunks by cosine similarity. Raises RetrievalError when the query cannot be embedded."""
        corpus = self.load(category)
        if not corpus:
            return []

        try:
            query_embedding = await self._embed(query)
        except UpstreamAIError as exc:
            raise RetrievalError(exc.message) from exc

        scored = [
            KnowledgeResult(
                content=chunk.get("content", ""),
                source=chunk.get("source", ""),
                similarity=cosine_similarity(query_embedding, chunk["embedding"]),
            )
            for chunk in corpus
        ]
        # sorted() is stable: equal scores keep corpus order
        scored = sorted(scored, key=lambda r: r.similarity, reverse=True)
        results = scored[: min(self.top_k, len(scored))]

        logger.info(f"Knowledge search: found {len(results)} results for '{query[:30]}...' in {category}")
        return results


def format_knowledge_context(results: List[KnowledgeResult]) -> str:
    """Join result contents for LLM context."""
    return "\n\n---\n\n".join(r.content for r in results if r.content)


def format_search_report(query: str, category: str, results: List[KnowledgeResult]) -> str:
    if not results:
        return f"Nenhum resultado encontrado em '{category}' para: {query}"
    parts = [f"*Resultados em '{category}' para:* {query}"]
    for i, r in enumerate(results, 1):
        parts.append(f"{i}. ({r.similarity:.2f}) {r.content[:400]}\n_Fonte: {r.source}_")
    return "\n\n".join(parts)


_knowledge_base: Optional[KnowledgeBase] = None


def get_knowledge_base() -> KnowledgeBase:
    global _knowledge_base
    if _knowledge_base is None:
        _knowledge_base = KnowledgeBase(
            base_dir=settings.knowledge_base_dir,
            embed=generate_embedding,
            top_k=settings.knowledge_top_k,
            max_categories=settings.knowledge_cache_max_categories,
        )
    return _knowledge_base
