"""Multi-strategy retrieval over the document store with score fusion."""
import logging
from dataclasses import replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from models.chunk import ExpandedMatch, SearchResult
from services.document_store import DocumentStore
from config import (
    SIMILARITY_THRESHOLD,
    DEFAULT_SEARCH_LIMIT,
    KEYWORD_WEIGHT,
    VECTOR_WEIGHT,
    CONTEXT_WINDOW,
    CONTEXT_MATCH_COUNT,
)
from errors import ValidationError

logger = logging.getLogger(__name__)

MIN_QUERY_TERM_LENGTH = 4
EXACT_MATCH_SCORE = 1.0
PARTIAL_MATCH_SCORE = 0.5

# Seed ranking for context expansion is fixed regardless of the hybrid weights
CONTEXT_VECTOR_WEIGHT = 0.6
CONTEXT_KEYWORD_WEIGHT = 0.4


class SearchStrategy(str, Enum):
    VECTOR = "vector"
    KEYWORD = "keyword"
    HYBRID = "hybrid"
    CONTEXT_EXPANDED = "context_expanded"

    @property
    def needs_vector(self) -> bool:
        return self in (SearchStrategy.VECTOR, SearchStrategy.HYBRID, SearchStrategy.CONTEXT_EXPANDED)

    @classmethod
    def parse(cls, value: Union[str, "SearchStrategy"]) -> "SearchStrategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise ValidationError(f"Unknown search strategy '{value}'. Expected one of: {valid}")


def tokenize_query(query_text: str) -> List[str]:
    """Lowercased whitespace tokens longer than 3 characters, in query order."""
    if not query_text:
        return []
    terms = []
    for token in query_text.lower().split():
        if len(token) >= MIN_QUERY_TERM_LENGTH and token not in terms:
            terms.append(token)
    return terms


def score_keywords(query_terms: Sequence[str], chunk_keywords: Sequence[str]) -> Tuple[float, List[str]]:
    """
    Score a chunk's keywords against query terms.

    Each chunk keyword contributes 1.0 if it equals a query term, 0.5 if it
    contains or is contained in a query term, and nothing otherwise.

    Returns:
        (match_score, matched keywords)
    """
    score = 0.0
    matched = []
    for keyword in chunk_keywords:
        keyword = keyword.lower()
        if keyword in query_terms:
            score += EXACT_MATCH_SCORE
            matched.append(keyword)
        elif any(term in keyword or keyword in term for term in query_terms):
            score += PARTIAL_MATCH_SCORE
            matched.append(keyword)
    return score, matched


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _row_to_result(row: Dict[str, Any]) -> SearchResult:
    similarity = _clamp(float(row.get("similarity") or 0.0))
    return SearchResult(
        id=str(row["id"]),
        doc_id=row["doc_id"],
        ordinal=int(row["chunk_id"]),
        content=row.get("content") or "",
        score=similarity,
        similarity=similarity,
        keywords=list(row.get("keywords") or []),
        metadata=dict(row.get("metadata") or {}),
    )


def _dedupe(results: List[SearchResult]) -> List[SearchResult]:
    """Collapse repeated chunk ids, keeping the higher-scoring copy in its first position."""
    best: Dict[str, SearchResult] = {}
    for result in results:
        current = best.get(result.id)
        if current is None or result.score > current.score:
            best[result.id] = result
    seen = set()
    deduped = []
    for result in results:
        if result.id not in seen:
            seen.add(result.id)
            deduped.append(best[result.id])
    return deduped


class RetrievalEngine:
    """Vector, keyword, hybrid and context-expanded search over a DocumentStore."""

    def __init__(
        self,
        store: DocumentStore,
        similarity_threshold: float = SIMILARITY_THRESHOLD,
        keyword_weight: float = KEYWORD_WEIGHT,
        vector_weight: float = VECTOR_WEIGHT,
        context_window: int = CONTEXT_WINDOW,
        match_count: int = CONTEXT_MATCH_COUNT,
        keyword_candidate_factor: int = 3
    ):
        """
        Initialize the retrieval engine.

        Args:
            store: DocumentStore providing the query primitives
            similarity_threshold: Minimum vector similarity (exclusive)
            keyword_weight: Weight of the keyword score in fused rankings
            vector_weight: Weight of the vector similarity in fused rankings
            context_window: Chunks fetched on each side of a context seed
            match_count: Number of seeds for context expansion
            keyword_candidate_factor: Over-fetch factor for keyword candidates
        """
        if keyword_weight < 0 or vector_weight < 0:
            raise ValidationError("Fusion weights cannot be negative")

        self.store = store
        self.similarity_threshold = similarity_threshold
        self.keyword_weight = keyword_weight
        self.vector_weight = vector_weight
        self.context_window = context_window
        self.match_count = match_count
        self.keyword_candidate_factor = keyword_candidate_factor
        logger.info(
            f"Initialized RetrievalEngine (threshold={similarity_threshold}, "
            f"weights kw={keyword_weight}/vec={vector_weight})"
        )

    def search(
        self,
        strategy: Union[str, SearchStrategy],
        query_text: str,
        query_vector: Optional[List[float]] = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
        threshold: Optional[float] = None,
        context_window: Optional[int] = None
    ) -> Union[List[SearchResult], List[ExpandedMatch]]:
        """
        Dispatch to the search method for the given strategy.

        Returns:
            SearchResult list, or ExpandedMatch list for context_expanded

        Raises:
            ValidationError: If the strategy is unknown or needs a vector that was not given
            ProviderError: If the store cannot be reached
        """
        strategy = SearchStrategy.parse(strategy)
        if strategy.needs_vector and query_vector is None:
            raise ValidationError(f"Strategy '{strategy.value}' requires a query vector")

        if strategy == SearchStrategy.VECTOR:
            return self.vector_search(query_vector, threshold=threshold, limit=limit)
        if strategy == SearchStrategy.KEYWORD:
            return self.keyword_search(query_text, limit=limit)
        if strategy == SearchStrategy.HYBRID:
            return self.hybrid_search(query_text, query_vector, limit=limit, threshold=threshold)
        return self.context_expanded_search(
            query_text,
            query_vector,
            match_count=min(limit, self.match_count),
            context_window=context_window,
            threshold=threshold,
        )

    def vector_search(
        self,
        query_vector: List[float],
        threshold: Optional[float] = None,
        limit: int = DEFAULT_SEARCH_LIMIT
    ) -> List[SearchResult]:
        """
        Chunks by descending cosine similarity, strictly above the threshold.

        Similarities are clamped to [0, 1] before filtering.
        """
        if not query_vector:
            raise ValidationError("Query vector cannot be empty")
        if limit <= 0:
            return []

        threshold = self.similarity_threshold if threshold is None else threshold
        rows = self.store.vector_search(query_vector, threshold, limit)

        results = [r for r in (_row_to_result(row) for row in rows) if r.similarity > threshold]
        results = _dedupe(results)
        results.sort(key=lambda r: r.similarity, reverse=True)

        logger.debug(f"Vector search: {len(results)} results above {threshold}")
        return results[:limit]

    def keyword_search(self, query_text: str, limit: int = DEFAULT_SEARCH_LIMIT) -> List[SearchResult]:
        """
        Chunks ranked by keyword match score.

        The store supplies candidates; scoring happens here so every store
        implementation ranks identically. Ties keep the store's order.
        """
        terms = tokenize_query(query_text)
        if not terms or limit <= 0:
            return []

        rows = self.store.keyword_search(terms, limit * self.keyword_candidate_factor)

        results = []
        for row in rows:
            keywords = row.get("keywords") or []
            if not keywords:
                continue
            match_score, matched = score_keywords(terms, keywords)
            if match_score <= 0:
                continue
            result = _row_to_result(row)
            result.keyword_score = match_score
            result.score = match_score
            result.matched_keywords = matched
            results.append(result)

        results = _dedupe(results)
        # sort() is stable: equal scores keep the store's order
        results.sort(key=lambda r: r.keyword_score, reverse=True)

        logger.debug(f"Keyword search for {terms}: {len(results)} results")
        return results[:limit]

    def hybrid_search(
        self,
        query_text: str,
        query_vector: List[float],
        keyword_weight: Optional[float] = None,
        vector_weight: Optional[float] = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
        threshold: Optional[float] = None
    ) -> List[SearchResult]:
        """
        Weighted fusion of keyword and vector search.

        Both searches over-fetch 2x the limit. A chunk found by both gets
        ``keyword_score * kw_weight + similarity * vec_weight``; a chunk found by
        one gets that side's weighted score only. Keyword scores are not capped,
        so a chunk matching several query terms outranks one matching a single term.
        """
        if limit <= 0:
            return []

        kw_weight = self.keyword_weight if keyword_weight is None else keyword_weight
        vec_weight = self.vector_weight if vector_weight is None else vector_weight

        vector_results = self.vector_search(query_vector, threshold=threshold, limit=limit * 2)
        keyword_results = self.keyword_search(query_text, limit=limit * 2)

        fused = self._fuse(vector_results, keyword_results, kw_weight, vec_weight)
        fused.sort(key=lambda r: r.combined_score, reverse=True)

        logger.debug(
            f"Hybrid search: {len(vector_results)} vector + {len(keyword_results)} keyword "
            f"-> {len(fused)} fused"
        )
        return fused[:limit]

    @staticmethod
    def _fuse(
        vector_results: List[SearchResult],
        keyword_results: List[SearchResult],
        keyword_weight: float,
        vector_weight: float
    ) -> List[SearchResult]:
        """Union by chunk id with weighted combined scores. Order: vector first, then keyword-only."""
        merged: Dict[str, SearchResult] = {}

        for result in vector_results:
            merged[result.id] = replace(result, keyword_score=0.0, matched_keywords=[])

        for result in keyword_results:
            if result.id in merged:
                existing = merged[result.id]
                existing.keyword_score = result.keyword_score
                existing.matched_keywords = list(result.matched_keywords)
            else:
                merged[result.id] = replace(result, similarity=0.0)

        for result in merged.values():
            result.combined_score = result.keyword_score * keyword_weight + result.similarity * vector_weight
            result.score = result.combined_score

        return list(merged.values())

    def context_expanded_search(
        self,
        query_text: str,
        query_vector: Optional[List[float]],
        match_count: Optional[int] = None,
        context_window: Optional[int] = None,
        threshold: Optional[float] = None
    ) -> List[ExpandedMatch]:
        """
        Best-matching chunks plus their neighbours from the same document.

        Seeds are ranked by a fixed 60/40 vector/keyword score. For each seed,
        chunks with ordinal in [seed - window, seed + window] of the same
        document are returned, grouped by seed rank and ordered by offset.
        The same chunk can appear under more than one seed.

        Args:
            query_text: Free-text query
            query_vector: Store-width query embedding (None = keyword seeds only)
            match_count: Number of seeds
            context_window: Neighbours fetched on each side of a seed
            threshold: Minimum vector similarity for seed candidates

        Returns:
            List of ExpandedMatch, empty if nothing matches
        """
        match_count = self.match_count if match_count is None else match_count
        context_window = self.context_window if context_window is None else context_window
        if match_count <= 0:
            return []
        if context_window < 0:
            raise ValidationError("context_window cannot be negative")

        pool = max(match_count * 2, 10)
        vector_results = (
            self.vector_search(query_vector, threshold=threshold, limit=pool) if query_vector else []
        )
        keyword_results = self.keyword_search(query_text, limit=pool)

        candidates = self._fuse(vector_results, keyword_results, CONTEXT_KEYWORD_WEIGHT, CONTEXT_VECTOR_WEIGHT)
        candidates = [c for c in candidates if c.combined_score > 0]
        candidates.sort(key=lambda r: r.combined_score, reverse=True)
        seeds = candidates[:match_count]

        expanded: List[ExpandedMatch] = []
        for rank, seed in enumerate(seeds, start=1):
            expanded.extend(self._expand_seed(seed, rank, context_window))

        logger.debug(
            f"Context expansion: {len(seeds)} seeds, window={context_window}, {len(expanded)} chunks"
        )
        return expanded

    def _expand_seed(self, seed: SearchResult, rank: int, context_window: int) -> List[ExpandedMatch]:
        lo = max(1, seed.ordinal - context_window)
        hi = seed.ordinal + context_window
        rows = self.store.get_chunks_in_range(seed.doc_id, lo, hi)

        group: Dict[int, ExpandedMatch] = {}
        for row in rows:
            if row.get("doc_id") != seed.doc_id:
                # Ordinals are only meaningful within one document
                continue
            neighbour = _row_to_result(row)
            if neighbour.ordinal < lo or neighbour.ordinal > hi or neighbour.ordinal in group:
                continue

            is_seed = neighbour.ordinal == seed.ordinal
            if not is_seed:
                neighbour.score = seed.combined_score
            group[neighbour.ordinal] = ExpandedMatch(
                result=seed if is_seed else neighbour,
                is_original_match=is_seed,
                original_chunk_id=seed.ordinal,
                position_offset=neighbour.ordinal - seed.ordinal,
                seed_rank=rank,
            )

        if seed.ordinal not in group:
            group[seed.ordinal] = ExpandedMatch(
                result=seed,
                is_original_match=True,
                original_chunk_id=seed.ordinal,
                position_offset=0,
                seed_rank=rank,
            )

        return sorted(group.values(), key=lambda m: m.position_offset)
