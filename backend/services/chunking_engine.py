"""Page-based chunking engine with cleaning and keyword extraction."""
import logging
import math
import re
from collections import Counter
from typing import Dict, List, Optional, Tuple

from models.chunk import Chunk

logger = logging.getLogger(__name__)

PAGE_MARKER_PATTERN = r"^## Page (\d+)\s*$"

STOP_WORDS = frozenset([
    "a", "about", "above", "after", "again", "against", "all", "am", "an", "and", "any", "are", "aren't", "as", "at",
    "be", "because", "been", "before", "being", "below", "between", "both", "but", "by",
    "can", "can't", "cannot", "could", "couldn't",
    "did", "didn't", "do", "does", "doesn't", "doing", "don't", "down", "during",
    "each",
    "few", "for", "from", "further",
    "had", "hadn't", "has", "hasn't", "have", "haven't", "having", "he", "he'd", "he'll", "he's", "her", "here",
    "here's", "hers", "herself", "him", "himself", "his", "how", "how's",
    "i", "i'd", "i'll", "i'm", "i've", "if", "in", "into", "is", "isn't", "it", "it's", "its", "itself",
    "let's",
    "me", "more", "most", "mustn't", "my", "myself",
    "no", "nor", "not",
    "of", "off", "on", "once", "only", "or", "other", "ought", "our", "ours", "ourselves", "out", "over", "own",
    "same", "shan't", "she", "she'd", "she'll", "she's", "should", "shouldn't", "so", "some", "such",
    "than", "that", "that's", "the", "their", "theirs", "them", "themselves", "then", "there", "there's", "these",
    "they", "they'd", "they'll", "they're", "they've", "this", "those", "through", "to", "too",
    "under", "until", "up",
    "very",
    "was", "wasn't", "we", "we'd", "we'll", "we're", "we've", "were", "weren't", "what", "what's", "when", "when's",
    "where", "where's", "which", "while", "who", "who's", "whom", "why", "why's", "with", "won't", "would", "wouldn't",
    "you", "you'd", "you'll", "you're", "you've", "your", "yours", "yourself", "yourselves",
    # Frequent in regulatory documents but useless as keywords
    "page", "document", "section", "chapter", "paragraph", "table", "figure", "appendix",
    "shall", "must", "may", "will", "also", "however", "therefore",
])

_HORIZONTAL_RULE = re.compile(r"^---+$", re.MULTILINE)
_IMAGE_PLACEHOLDER = re.compile(r"!\[[^\]]*\]\([^)]*\)")
_PAGE_NUMBER_FOOTER = re.compile(r"^-\s*\d+\s*-$", re.MULTILINE)
_BLANK_LINE_RUN = re.compile(r"\n\s*\n\s*\n")
_DISALLOWED_CHARS = re.compile(r"[^a-zA-Z0-9\s.,!?'\"-]")
_NON_WORD = re.compile(r"[^\w\s]")
_DIGITS_ONLY = re.compile(r"^\d+$")

_TITLE = re.compile(r"^#\s+(.+)$", re.MULTILINE)
_HEADER_FIELDS = {
    "author": re.compile(r"\*\*Author:\*\*\s*(.+)"),
    "subject": re.compile(r"\*\*Subject:\*\*\s*(.+)"),
    "creator": re.compile(r"\*\*Creator:\*\*\s*(.+)"),
}


class PageChunker:
    """Splits a document on page markers into cleaned, keyworded chunks."""

    def __init__(
        self,
        page_pattern: str = PAGE_MARKER_PATTERN,
        max_keywords: int = 10,
        min_keyword_length: int = 4,
        max_keyword_length: int = 19,
    ):
        """
        Initialize PageChunker.

        Args:
            page_pattern: Multiline regex matching a page-boundary line
            max_keywords: Number of keywords kept per chunk
            min_keyword_length: Shortest keyword accepted (inclusive)
            max_keyword_length: Longest keyword accepted (inclusive)
        """
        self.page_regex = re.compile(page_pattern, re.MULTILINE)
        self.max_keywords = max_keywords
        self.min_keyword_length = min_keyword_length
        self.max_keyword_length = max_keyword_length

    def chunk_document(self, raw_text: str, doc_id: str) -> List[Chunk]:
        """
        Split raw document text into ordered chunks.

        Segments that are empty before or after cleaning are dropped and do
        not consume an ordinal, so ordinals are always 1..N.

        Args:
            raw_text: Full document text including page markers
            doc_id: External id of the parent document

        Returns:
            Ordered list of Chunk objects, empty if nothing survives cleaning
        """
        if not raw_text or not raw_text.strip():
            return []

        chunks: List[Chunk] = []
        for page_number, segment, start_index, end_index in self._split_pages(raw_text):
            if not segment.strip():
                logger.debug(f"Skipping empty page {page_number} in document {doc_id}")
                continue

            clean_content = self.clean_text(self.clean_page_content(segment))
            if not clean_content.strip():
                logger.debug(f"Skipping page {page_number} in document {doc_id}: empty after cleaning")
                continue

            ordinal = len(chunks) + 1
            chunks.append(Chunk(
                chunk_id=f"{doc_id}_page_{ordinal}",
                doc_id=doc_id,
                ordinal=ordinal,
                content=clean_content,
                token_estimate=self.estimate_tokens(clean_content),
                keywords=self.extract_keywords(clean_content),
                start_index=start_index,
                end_index=end_index,
            ))

        logger.debug(f"Chunked document {doc_id} into {len(chunks)} pages")
        return chunks

    def _split_pages(self, raw_text: str) -> List[Tuple[Optional[int], str, int, int]]:
        """Return (page_number, segment, start_index, end_index) per page marker."""
        markers = list(self.page_regex.finditer(raw_text))
        if not markers:
            # No markers: the whole text is one page
            return [(None, raw_text, 0, len(raw_text))]

        segments = []
        for position, marker in enumerate(markers):
            end_index = markers[position + 1].start() if position + 1 < len(markers) else len(raw_text)
            page_number = int(marker.group(1)) if marker.groups() else position + 1
            segments.append((page_number, raw_text[marker.end():end_index], marker.start(), end_index))
        return segments

    @staticmethod
    def clean_page_content(content: str) -> str:
        """Remove rules, image placeholders, page-number footers and blank-line runs."""
        content = _HORIZONTAL_RULE.sub("", content)
        content = _IMAGE_PLACEHOLDER.sub("", content)
        content = _PAGE_NUMBER_FOOTER.sub("", content)
        content = _BLANK_LINE_RUN.sub("\n\n", content)
        return content.strip()

    @staticmethod
    def clean_text(text: str) -> str:
        """Drop every character that is not alphanumeric, whitespace or common punctuation."""
        return _DISALLOWED_CHARS.sub("", text)

    @staticmethod
    def estimate_tokens(text: str) -> int:
        """Rough token count: ~4 characters per token for English."""
        return math.ceil(len(text) / 4)

    def extract_keywords(self, content: str) -> List[str]:
        """
        Top keywords by frequency.

        Ties are broken by first occurrence, which makes the output
        deterministic for a given text.
        """
        words = [
            word for word in _NON_WORD.sub(" ", content.lower()).split()
            if self.min_keyword_length <= len(word) <= self.max_keyword_length
            and word not in STOP_WORDS
            and not _DIGITS_ONLY.match(word)
        ]

        # Counter keeps first-insertion order and sorted() is stable
        counts = Counter(words)
        ranked = sorted(counts.items(), key=lambda item: -item[1])
        return [word for word, _ in ranked[:self.max_keywords]]


def parse_header_metadata(raw_text: str) -> Dict[str, str]:
    """Extract title and the bold header fields from a markdown document."""
    metadata: Dict[str, str] = {}

    title_match = _TITLE.search(raw_text)
    if title_match:
        metadata["title"] = title_match.group(1).strip()

    for name, pattern in _HEADER_FIELDS.items():
        match = pattern.search(raw_text)
        if match:
            metadata[name] = match.group(1).strip()

    return metadata
