"""Query analysis, strategy dispatch, response formatting and caching."""
import copy
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple, Union

from cachetools import FIFOCache

from config import (
    CACHE_MAX_SIZE,
    DEFAULT_SEARCH_LIMIT,
    DEFAULT_SEARCH_STRATEGY,
    DOCUMENT_URL_TEMPLATE,
    PINNED_SEARCH_STRATEGY,
)
from errors import ConfigurationError, ValidationError
from models.chunk import ExpandedMatch, SearchResult
from services.dimension_adapter import DimensionAdapter
from services.embedding_model import EmbeddingModel
from services.retrieval_engine import RetrievalEngine, SearchStrategy

logger = logging.getLogger(__name__)

NO_RESULTS_MESSAGE = "No relevant documents found for your query."

INTENT_WORDS = [
    ("definition", {"what", "define", "definition"}),
    ("procedure", {"how", "procedure", "process"}),
    ("temporal", {"when", "date", "time"}),
    ("regulatory", {"requirement", "rule", "regulation"}),
]

SYNONYMS = {
    "bank": ["banking", "financial institution"],
    "regulation": ["rule", "requirement", "guideline"],
    "return": ["reporting", "submission", "filing"],
    "data": ["information", "details", "records"],
}

MAX_EXPANDED_QUERIES = 3
PERFORMANCE_WINDOW = 100
PHASES = ("analysis", "embedding", "retrieval", "formatting", "total")


@dataclass
class QueryAnalysis:
    intent: str
    entities: List[str]
    keywords: List[str]
    complexity: str  # simple, moderate or complex
    expanded_queries: List[str]


@dataclass
class QueryMetrics:
    total_documents: int = 0
    average_similarity: float = 0.0
    search_strategy: str = ""
    analysis_ms: float = 0.0
    embedding_ms: float = 0.0
    retrieval_ms: float = 0.0
    formatting_ms: float = 0.0
    total_ms: float = 0.0


@dataclass
class DocumentLink:
    doc_id: str
    title: str
    url: str
    similarity: float


@dataclass
class QueryResponse:
    query: str
    results: List[SearchResult]
    formatted_context: str
    analysis: QueryAnalysis
    metrics: QueryMetrics
    strategy_used: str
    expanded_results: List[ExpandedMatch] = field(default_factory=list)
    document_links: List[DocumentLink] = field(default_factory=list)
    cache_hit: bool = False


def analyze_query(query: str) -> QueryAnalysis:
    """
    Heuristic query analysis.

    Intent comes from the first matching word group, complexity from token
    and keyword counts. Expanded queries substitute synonyms for known
    keywords; the original query is always first.
    """
    words = query.lower().split()
    keywords = [word for word in words if len(word) > 3]
    word_set = set(words)

    intent = "general"
    for name, triggers in INTENT_WORDS:
        if word_set & triggers:
            intent = name
            break

    if len(words) > 15 or len(keywords) > 8:
        complexity = "complex"
    elif len(words) > 8 or len(keywords) > 4:
        complexity = "moderate"
    else:
        complexity = "simple"

    expanded = [query]
    for keyword in keywords:
        for synonym in SYNONYMS.get(keyword, []):
            expanded.append(query.replace(keyword, synonym))

    return QueryAnalysis(
        intent=intent,
        entities=keywords[:5],
        keywords=keywords,
        complexity=complexity,
        expanded_queries=expanded[:MAX_EXPANDED_QUERIES],
    )


def format_context(results: List[SearchResult]) -> str:
    """Numbered document blocks separated by rules."""
    if not results:
        return NO_RESULTS_MESSAGE

    parts = []
    for index, result in enumerate(results, start=1):
        similarity = f" (similarity: {result.similarity * 100:.1f}%)" if result.similarity else ""
        parts.append(f"Document {index} [{result.doc_id}]{similarity}:\n{result.content}\n")
    return "\n---\n\n".join(parts)


def format_expanded_context(matches: List[ExpandedMatch]) -> str:
    """One block per seed match with its neighbours in document order."""
    if not matches:
        return NO_RESULTS_MESSAGE

    groups: Dict[int, List[ExpandedMatch]] = {}
    for match in matches:
        groups.setdefault(match.seed_rank, []).append(match)

    parts = []
    for index, rank in enumerate(sorted(groups), start=1):
        group = sorted(groups[rank], key=lambda m: m.position_offset)
        seed = next((m.result for m in group if m.is_original_match), None)
        if seed is None:
            continue

        parts.append(f"=== MATCH {index} [Document: {seed.doc_id}] ===")
        if seed.keywords:
            parts.append(f"Keywords: {', '.join(seed.keywords)}")
        parts.append(
            f"Similarity: {seed.similarity * 100:.1f}% | "
            f"Keyword Score: {seed.keyword_score * 100:.1f}% | "
            f"Combined Score: {seed.combined_score * 100:.1f}%"
        )
        parts.append("")

        for match in group:
            if match.is_original_match:
                indicator = ">>> MATCHED CHUNK <<<"
            elif match.position_offset < 0:
                indicator = f"[Context: {abs(match.position_offset)} chunks before]"
            else:
                indicator = f"[Context: {match.position_offset} chunks after]"
            parts.append(f"{indicator}\nChunk {match.ordinal}: {match.result.content}\n")

        parts.append("\n---\n")

    return "\n".join(parts)


class PerformanceTracker:
    """Rolling per-phase latency samples."""

    def __init__(self, window: int = PERFORMANCE_WINDOW):
        self._samples: Dict[str, Deque[float]] = {phase: deque(maxlen=window) for phase in PHASES}
        self._lock = threading.Lock()

    def record(self, metrics: QueryMetrics) -> None:
        with self._lock:
            self._samples["analysis"].append(metrics.analysis_ms)
            self._samples["embedding"].append(metrics.embedding_ms)
            self._samples["retrieval"].append(metrics.retrieval_ms)
            self._samples["formatting"].append(metrics.formatting_ms)
            self._samples["total"].append(metrics.total_ms)

    def summary(self) -> Dict[str, Dict[str, float]]:
        """avg/min/max/count per phase that has samples."""
        with self._lock:
            snapshot = {phase: list(samples) for phase, samples in self._samples.items()}

        summary = {}
        for phase, samples in snapshot.items():
            if samples:
                summary[phase] = {
                    "avg": sum(samples) / len(samples),
                    "min": min(samples),
                    "max": max(samples),
                    "count": len(samples),
                }
        return summary


class QueryOrchestrator:
    """Front door for search: analysis, dispatch, formatting, caching and metrics.

    The response cache is FIFO: once full, the oldest inserted entry is
    evicted, however often it is hit. Recency of use is not tracked.
    """

    def __init__(
        self,
        engine: RetrievalEngine,
        embedding_model: Optional[EmbeddingModel] = None,
        dimension_adapter: Optional[DimensionAdapter] = None,
        default_strategy: str = DEFAULT_SEARCH_STRATEGY,
        pinned_strategy: Optional[str] = PINNED_SEARCH_STRATEGY,
        cache_max_size: int = CACHE_MAX_SIZE,
        document_url_template: str = DOCUMENT_URL_TEMPLATE
    ):
        """
        Initialize QueryOrchestrator.

        Args:
            engine: RetrievalEngine to dispatch to
            embedding_model: Query embedder; required for vector-based strategies
            dimension_adapter: Reduces query embeddings to the store width
            default_strategy: Strategy used when a request names none
            pinned_strategy: If set, overrides every requested strategy
            cache_max_size: Maximum cached responses
            document_url_template: Format string with ``{doc_id}`` for source links
        """
        if cache_max_size <= 0:
            raise ConfigurationError("cache_max_size must be positive")

        self.engine = engine
        self.embedding_model = embedding_model
        self.dimension_adapter = dimension_adapter
        if embedding_model is not None and dimension_adapter is None:
            self.dimension_adapter = DimensionAdapter()
        self.default_strategy = SearchStrategy.parse(default_strategy)
        self.pinned_strategy = SearchStrategy.parse(pinned_strategy) if pinned_strategy else None
        self.document_url_template = document_url_template

        self._cache: FIFOCache = FIFOCache(maxsize=cache_max_size)
        self._cache_lock = threading.Lock()
        self._cache_hits = 0
        self._cache_misses = 0
        self.performance = PerformanceTracker()

        if self.pinned_strategy:
            logger.info(f"Search strategy pinned to '{self.pinned_strategy.value}'")
        logger.info(f"Initialized QueryOrchestrator (default strategy: {self.default_strategy.value})")

    def resolve_strategy(self, requested: Union[str, SearchStrategy, None]) -> SearchStrategy:
        """Apply the default and any pinned override to a requested strategy."""
        strategy = SearchStrategy.parse(requested) if requested else self.default_strategy
        if self.pinned_strategy and strategy != self.pinned_strategy:
            logger.info(
                f"Requested strategy '{strategy.value}' overridden by pinned strategy "
                f"'{self.pinned_strategy.value}'"
            )
            return self.pinned_strategy
        return strategy

    def process_query(
        self,
        query: str,
        strategy: Union[str, SearchStrategy, None] = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
        use_cache: bool = True,
        threshold: Optional[float] = None,
        context_window: Optional[int] = None
    ) -> QueryResponse:
        """
        Answer a search query.

        Args:
            query: Free-text query
            strategy: vector, keyword, hybrid or context_expanded (default from config)
            limit: Maximum results
            use_cache: Read from and write to the response cache
            threshold: Similarity threshold override
            context_window: Neighbour window override for context expansion

        Returns:
            QueryResponse

        Raises:
            ValidationError: If the query, limit or strategy is invalid
            ConfigurationError: If a vector strategy is used without an embedding model
            ProviderError: If embedding or the store fails
        """
        if not query or not query.strip():
            raise ValidationError("Query cannot be empty")
        if limit <= 0:
            raise ValidationError("limit must be positive")

        query = query.strip()
        effective = self.resolve_strategy(strategy)
        cache_key = self._cache_key(query, effective, limit, threshold, context_window)

        if use_cache:
            cached = self._get_cached(cache_key)
            if cached is not None:
                logger.info(f"Cache hit for query: {query[:50]}")
                return cached

        total_start = time.time()
        metrics = QueryMetrics(search_strategy=effective.value)

        start = time.time()
        analysis = analyze_query(query)
        metrics.analysis_ms = (time.time() - start) * 1000

        query_vector = None
        if effective.needs_vector:
            start = time.time()
            query_vector = self._embed_query(query)
            metrics.embedding_ms = (time.time() - start) * 1000

        start = time.time()
        output = self.engine.search(
            effective,
            query,
            query_vector=query_vector,
            limit=limit,
            threshold=threshold,
            context_window=context_window,
        )
        metrics.retrieval_ms = (time.time() - start) * 1000

        expanded: List[ExpandedMatch] = []
        if effective == SearchStrategy.CONTEXT_EXPANDED:
            expanded = output
            results = [m.result for m in expanded if m.is_original_match]
        else:
            results = output

        start = time.time()
        if effective == SearchStrategy.CONTEXT_EXPANDED:
            context = format_expanded_context(expanded)
        else:
            context = format_context(results)
        links = self.document_links(results)
        metrics.formatting_ms = (time.time() - start) * 1000

        similarities = [r.similarity for r in results if r.similarity > 0]
        metrics.total_documents = len(results)
        metrics.average_similarity = sum(similarities) / len(similarities) if similarities else 0.0
        metrics.total_ms = (time.time() - total_start) * 1000
        self.performance.record(metrics)

        response = QueryResponse(
            query=query,
            results=results,
            expanded_results=expanded,
            formatted_context=context,
            analysis=analysis,
            metrics=metrics,
            strategy_used=effective.value,
            document_links=links,
        )

        if use_cache:
            with self._cache_lock:
                self._cache[cache_key] = copy.deepcopy(response)

        logger.info(
            f"Query processed ({effective.value}): {len(results)} results in {metrics.total_ms:.0f}ms",
            extra={"strategy": effective.value, "results": len(results)}
        )
        return response

    def _cache_key(
        self,
        query: str,
        strategy: SearchStrategy,
        limit: int,
        threshold: Optional[float],
        context_window: Optional[int]
    ) -> Tuple[Any, ...]:
        if threshold is None:
            threshold = self.engine.similarity_threshold
        if context_window is None:
            context_window = self.engine.context_window
        return (query, strategy.value, limit, threshold, context_window)

    def _get_cached(self, key: Tuple[Any, ...]) -> Optional[QueryResponse]:
        with self._cache_lock:
            cached = self._cache.get(key)
            if cached is None:
                self._cache_misses += 1
                return None
            self._cache_hits += 1
            response = copy.deepcopy(cached)
        response.cache_hit = True
        return response

    def _embed_query(self, query: str) -> List[float]:
        if self.embedding_model is None:
            raise ConfigurationError("An embedding model is required for vector-based strategies")
        vector = self.embedding_model.embed_text(query)
        return self.dimension_adapter.adapt(vector)

    def document_links(self, results: List[SearchResult]) -> List[DocumentLink]:
        """One link per source document, carrying its best similarity."""
        links: Dict[str, DocumentLink] = {}
        for result in results:
            link = links.get(result.doc_id)
            if link is None:
                links[result.doc_id] = DocumentLink(
                    doc_id=result.doc_id,
                    title=result.metadata.get("title") or result.doc_id,
                    url=self.document_url_template.format(doc_id=result.doc_id),
                    similarity=result.similarity,
                )
            elif result.similarity > link.similarity:
                link.similarity = result.similarity
        return list(links.values())

    def clear_cache(self) -> int:
        """Drop all cached responses. Returns how many were removed."""
        with self._cache_lock:
            removed = len(self._cache)
            self._cache.clear()
        logger.info(f"Cleared {removed} cached responses")
        return removed

    def cache_stats(self) -> Dict[str, int]:
        with self._cache_lock:
            return {
                "size": len(self._cache),
                "max_size": int(self._cache.maxsize),
                "hits": self._cache_hits,
                "misses": self._cache_misses,
            }

    def performance_summary(self) -> Dict[str, Dict[str, float]]:
        return self.performance.summary()
