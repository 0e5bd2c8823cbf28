"""Deterministic compression of embeddings to the store's vector width."""
import logging
from typing import List, Sequence

import numpy as np

from config import EMBEDDING_NATIVE_DIMENSION, EMBEDDING_TARGET_DIMENSION
from errors import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

HEAD_FRACTION = 0.3


def reduce_dimension(vector: Sequence[float], target_dim: int) -> List[float]:
    """
    Compress a vector to ``target_dim`` components.

    The first 30% of the target width is kept verbatim (leading components of
    sentence-transformer embeddings carry the most variance). The remaining
    slots are filled by evenly sampling the tail of the vector, each sample
    averaged with its immediate neighbours. The result is rescaled so its L2
    norm matches the original.

    Args:
        vector: Input embedding
        target_dim: Desired output length

    Returns:
        Reduced vector; the input unchanged (as a list) if already short enough

    Raises:
        ValueError: If target_dim is not positive
    """
    if target_dim <= 0:
        raise ValueError(f"target_dim must be positive, got {target_dim}")

    original = np.asarray(vector, dtype=np.float64)
    n = len(original)
    if n <= target_dim:
        return original.tolist()

    head = int(target_dim * HEAD_FRACTION)
    remaining = target_dim - head
    step = (n - head) / remaining

    tail = np.empty(remaining, dtype=np.float64)
    for i in range(remaining):
        index = int(head + i * step)
        lo = max(0, index - 1)
        hi = min(n, index + 2)
        tail[i] = original[lo:hi].mean()

    reduced = np.concatenate([original[:head], tail])

    original_norm = np.linalg.norm(original)
    reduced_norm = np.linalg.norm(reduced)
    if reduced_norm > 0:
        reduced = reduced * (original_norm / reduced_norm)

    return reduced.tolist()


class DimensionAdapter:
    """Validates native embeddings and reduces them to the store dimension."""

    def __init__(
        self,
        native_dim: int = EMBEDDING_NATIVE_DIMENSION,
        target_dim: int = EMBEDDING_TARGET_DIMENSION
    ):
        """
        Initialize DimensionAdapter.

        Args:
            native_dim: Length of vectors produced by the embedding model
            target_dim: Fixed vector width of the store column

        Raises:
            ConfigurationError: If the dimensions are inconsistent
        """
        if target_dim <= 0 or native_dim <= 0:
            raise ConfigurationError(
                f"Embedding dimensions must be positive (native={native_dim}, target={target_dim})"
            )
        if native_dim < target_dim:
            raise ConfigurationError(
                f"Native embedding dimension {native_dim} is smaller than store dimension {target_dim}"
            )

        self.native_dim = native_dim
        self.target_dim = target_dim

        logger.info(f"Initialized DimensionAdapter: {native_dim} -> {target_dim}")

    def adapt(self, vector: Sequence[float]) -> List[float]:
        """
        Reduce a native-dimension vector to the store dimension.

        Raises:
            ValidationError: If the vector does not have the native length
        """
        if len(vector) != self.native_dim:
            raise ValidationError(
                f"Expected embedding of length {self.native_dim}, got {len(vector)}"
            )
        return reduce_dimension(vector, self.target_dim)
