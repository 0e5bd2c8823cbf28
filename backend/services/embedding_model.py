"""Embedding model integration with Hugging Face Inference API."""
import re
import time
import logging
from dataclasses import dataclass
from typing import List, Optional
import httpx
from config import HUGGINGFACE_API_KEY, EMBEDDING_MODEL, EMBEDDING_NATIVE_DIMENSION
from errors import ConfigurationError, ProviderError, ValidationError

logger = logging.getLogger(__name__)

MAX_INPUT_CHARS = 8192

_WHITESPACE = re.compile(r"\s+")


@dataclass
class EmbeddingOutcome:
    """Result of embedding one item of a batch."""
    vector: List[float]
    failed: bool = False
    error: Optional[str] = None


def preprocess_text(text: str) -> str:
    """Collapse whitespace and truncate to the model's input limit."""
    return _WHITESPACE.sub(" ", text).strip()[:MAX_INPUT_CHARS]


class EmbeddingModel:
    """Wrapper for Hugging Face Inference API embedding model."""

    def __init__(
        self,
        api_key: str = HUGGINGFACE_API_KEY,
        model_name: str = EMBEDDING_MODEL,
        native_dim: int = EMBEDDING_NATIVE_DIMENSION,
        max_retries: int = 5,
        initial_delay: float = 5.0,
        timeout: float = 120.0
    ):
        """
        Initialize the embedding model client.

        Args:
            api_key: Hugging Face API key
            model_name: Model identifier (default: sentence-transformers/all-mpnet-base-v2)
            native_dim: Length of the vectors the model produces
            max_retries: Maximum number of attempts for transient failures
            initial_delay: Initial delay in seconds for exponential backoff
            timeout: Request timeout in seconds
        """
        if not api_key:
            raise ConfigurationError("HUGGINGFACE_API_KEY environment variable is required")

        self.api_key = api_key
        self.model_name = model_name
        self.native_dim = native_dim
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.timeout = timeout
        self.api_url = f"https://router.huggingface.co/hf-inference/models/{model_name}/pipeline/feature-extraction"

        logger.info(f"Initialized EmbeddingModel with model: {model_name}")

    def embed_text(self, text: str) -> List[float]:
        """
        Generate embedding for a single text string.

        Args:
            text: Text to embed

        Returns:
            Embedding vector as list of floats

        Raises:
            ValidationError: If text is empty
            ProviderError: If API request fails after all retries
        """
        if not text or not text.strip():
            raise ValidationError("Text cannot be empty")

        return self._embed_with_retry([preprocess_text(text)])[0]

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for multiple texts.

        Always returns one vector per input. Items that cannot be embedded
        come back as zero vectors; use embed_batch_with_status to tell them
        apart.

        Args:
            texts: List of texts to embed

        Returns:
            List of embedding vectors, aligned with the input
        """
        return [outcome.vector for outcome in self.embed_batch_with_status(texts)]

    def embed_batch_with_status(self, texts: List[str]) -> List[EmbeddingOutcome]:
        """
        Generate embeddings for multiple texts, flagging per-item failures.

        The whole batch is sent in one API call first. If that call fails,
        every item is retried on its own so a single bad input cannot sink
        the rest.

        Args:
            texts: List of texts to embed

        Returns:
            List of EmbeddingOutcome, aligned with the input
        """
        if not texts:
            return []

        outcomes: List[Optional[EmbeddingOutcome]] = [None] * len(texts)
        valid_positions = []
        for position, text in enumerate(texts):
            if text and text.strip():
                valid_positions.append(position)
            else:
                outcomes[position] = self._failed_outcome("Text cannot be empty")

        if len(valid_positions) < len(texts):
            logger.warning(f"Filtered out {len(texts) - len(valid_positions)} empty texts from batch")

        if valid_positions:
            prepared = [preprocess_text(texts[p]) for p in valid_positions]
            try:
                vectors = self._embed_with_retry(prepared)
                if len(vectors) != len(prepared):
                    raise ProviderError(
                        f"Expected {len(prepared)} embeddings, got {len(vectors)}"
                    )
                for position, vector in zip(valid_positions, vectors):
                    outcomes[position] = EmbeddingOutcome(vector=vector)
            except ProviderError as e:
                logger.warning(f"Batch embedding failed ({e}); retrying {len(prepared)} items individually")
                for position, text in zip(valid_positions, prepared):
                    outcomes[position] = self._embed_single(text)

        failed = sum(1 for outcome in outcomes if outcome.failed)
        if failed:
            logger.warning(f"{failed}/{len(texts)} texts could not be embedded")

        return outcomes

    def _embed_single(self, text: str) -> EmbeddingOutcome:
        try:
            return EmbeddingOutcome(vector=self._embed_with_retry([text])[0])
        except ProviderError as e:
            logger.error(f"Embedding failed for item: {e}")
            return self._failed_outcome(str(e))

    def _failed_outcome(self, error: str) -> EmbeddingOutcome:
        return EmbeddingOutcome(vector=[0.0] * self.native_dim, failed=True, error=error)

    def _embed_with_retry(self, texts: List[str]) -> List[List[float]]:
        """
        Internal method to call HF API with exponential backoff retry strategy.

        HF free tier models "sleep" and take 15-20s to load on first query.
        503 responses, timeouts and network errors are retried with
        exponential backoff; 401 and 429 fail immediately.

        Args:
            texts: List of texts to embed

        Returns:
            List of embedding vectors

        Raises:
            ProviderError: If API request fails after all retries
        """
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }

        payload = {
            "inputs": texts,
            "options": {
                "wait_for_model": True  # Wait for model to load if sleeping
            }
        }

        delay = self.initial_delay
        last_error = None

        for attempt in range(self.max_retries):
            try:
                start_time = time.time()

                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(
                        self.api_url,
                        headers=headers,
                        json=payload
                    )

                elapsed = time.time() - start_time

                # Handle 503 Service Unavailable (model loading)
                if response.status_code == 503:
                    error_data = response.json() if response.text else {}
                    estimated_time = error_data.get("estimated_time", delay)
                    last_error = f"Model failed to load after {self.max_retries} attempts"

                    logger.warning(
                        f"Model loading (503) on attempt {attempt + 1}/{self.max_retries}. "
                        f"Estimated time: {estimated_time}s. Retrying in {delay}s..."
                    )

                    if attempt < self.max_retries - 1:
                        time.sleep(delay)
                        delay = min(delay * 2, 60.0)  # Exponential backoff, max 60s
                        continue
                    break

                # Handle rate limiting
                if response.status_code == 429:
                    logger.error("Rate limit exceeded for Hugging Face API")
                    raise ProviderError("Rate limit exceeded. Please try again later.")

                # Handle authentication errors
                if response.status_code == 401:
                    logger.error("Authentication failed for Hugging Face API")
                    raise ProviderError("Invalid API key")

                # Handle other errors
                if response.status_code != 200:
                    error_msg = f"API request failed with status {response.status_code}: {response.text}"
                    logger.error(error_msg)
                    raise ProviderError(error_msg)

                # Success - parse embeddings
                embeddings = response.json()

                if elapsed > 10.0:
                    logger.info(
                        f"Model loading delay detected: {elapsed:.1f}s for {len(texts)} texts "
                        f"(attempt {attempt + 1})"
                    )
                else:
                    logger.debug(f"Generated embeddings for {len(texts)} texts in {elapsed:.2f}s")

                return embeddings

            except httpx.TimeoutException:
                last_error = f"Request timeout after {self.timeout}s"
                logger.error(f"{last_error} on attempt {attempt + 1}/{self.max_retries}")

                if attempt < self.max_retries - 1:
                    time.sleep(delay)
                    delay = min(delay * 2, 60.0)
                    continue

            except httpx.RequestError as e:
                last_error = f"Network error: {str(e)}"
                logger.error(f"{last_error} on attempt {attempt + 1}/{self.max_retries}")

                if attempt < self.max_retries - 1:
                    time.sleep(delay)
                    delay = min(delay * 2, 60.0)
                    continue

        # All retries exhausted
        error_msg = f"Failed to generate embeddings after {self.max_retries} attempts. Last error: {last_error}"
        logger.error(error_msg)
        raise ProviderError(error_msg, transient=True)

    def warmup(self) -> bool:
        """
        Warm up the model with a dummy query to avoid cold start delays.

        Returns:
            True if warmup successful, False otherwise
        """
        try:
            logger.info("Warming up embedding model...")
            start_time = time.time()

            self.embed_text("warmup query")

            elapsed = time.time() - start_time
            logger.info(f"Model warmup completed in {elapsed:.1f}s")
            return True

        except ProviderError as e:
            logger.error(f"Model warmup failed: {str(e)}")
            return False
