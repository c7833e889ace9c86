"""Visual vocabulary for Bag of Visual Words place recognition.

A visual vocabulary enables fast image similarity comparison by:
1. Clustering descriptors into "visual words" (k-means centers)
2. Representing images as histograms of visual word occurrences
3. Comparing images via histogram similarity (cosine distance)

The vocabulary is trained offline (scripts/train_vocabulary.py) and loaded
once per session; it is never modified afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import numpy as np

from ..errors import ResourceExhaustion


@dataclass(frozen=True, eq=False)
class VisualVocabulary:
    """Bag of Visual Words vocabulary for ORB descriptors.

    Attributes:
        words: Cluster centers (visual words), shape (n_words, 32)
        n_words: Number of visual words in vocabulary
        idf: Inverse document frequency weights, shape (n_words,)
    """

    words: np.ndarray  # (n_words, 32) float32 cluster centers
    n_words: int
    idf: np.ndarray  # (n_words,) IDF weights

    def __post_init__(self) -> None:
        words = np.array(self.words, dtype=np.float32)
        if words.ndim != 2 or words.shape[1] != 32 or len(words) != self.n_words:
            raise ValueError(f"Vocabulary words must be ({self.n_words}, 32), got {words.shape}")
        words.setflags(write=False)
        idf = np.array(self.idf, dtype=np.float32)
        idf.setflags(write=False)
        object.__setattr__(self, "words", words)
        object.__setattr__(self, "idf", idf)
        object.__setattr__(self, "_word_norms", np.sum(words.astype(np.float64) ** 2, axis=1))

    def assign(self, descriptors: np.ndarray) -> np.ndarray:
        """Return the nearest visual word index of each descriptor.

        k-means treats the binary descriptors as float vectors, so words are
        assigned by Euclidean distance, expanded as
        ||d||^2 + ||w||^2 - 2 d.w to avoid an (N, n_words, 32) tensor.
        """
        if descriptors is None or len(descriptors) == 0:
            return np.empty(0, dtype=np.int64)
        d = np.asarray(descriptors, dtype=np.float64).reshape(-1, 32)
        distances = (
            np.sum(d**2, axis=1, keepdims=True)
            + self._word_norms[None, :]
            - 2.0 * d @ self.words.T.astype(np.float64)
        )
        return np.argmin(distances, axis=1)

    def describe(self, descriptors: np.ndarray) -> np.ndarray:
        """Convert image descriptors to Bag of Words vector.

        Args:
            descriptors: ORB descriptors, shape (N, 32) uint8

        Returns:
            BoW vector, shape (n_words,), L2 normalized with TF-IDF weighting
        """
        word_indices = self.assign(descriptors)
        if len(word_indices) == 0:
            return np.zeros(self.n_words, dtype=np.float32)

        histogram = np.bincount(word_indices, minlength=self.n_words).astype(np.float32)
        tfidf = histogram * self.idf

        norm = np.linalg.norm(tfidf)
        if norm > 0:
            tfidf = tfidf / norm
        return tfidf.astype(np.float32)

    def similarity(self, bow1: np.ndarray, bow2: np.ndarray) -> float:
        """Compute cosine similarity between two L2-normalized BoW vectors."""
        return float(np.dot(bow1, bow2))

    def save(self, path: str | Path) -> None:
        """Save vocabulary to .npz file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        np.savez(path, words=self.words, n_words=self.n_words, idf=self.idf)

    @classmethod
    def load(cls, path: str | Path) -> VisualVocabulary:
        """Load vocabulary from .npz file.

        Raises:
            ResourceExhaustion: If the file is missing or malformed
        """
        path = Path(path)
        if not path.exists():
            raise ResourceExhaustion(f"Vocabulary file not found: {path}")
        try:
            with np.load(path) as data:
                return cls(
                    words=data["words"],
                    n_words=int(data["n_words"]),
                    idf=data["idf"],
                )
        except (OSError, KeyError, ValueError) as e:
            raise ResourceExhaustion(f"Failed to load vocabulary {path}: {e}") from e

    @classmethod
    def from_words(cls, words: np.ndarray) -> VisualVocabulary:
        """Create vocabulary from cluster centers with uniform IDF."""
        n_words = len(words)
        return cls(
            words=np.asarray(words, dtype=np.float32),
            n_words=n_words,
            idf=np.ones(n_words, dtype=np.float32),
        )

    def with_idf(self, document_frequencies: np.ndarray, n_documents: int) -> VisualVocabulary:
        """Return a copy with IDF(word) = log(N / df(word)).

        Args:
            document_frequencies: Count of documents containing each word
            n_documents: Total number of documents
        """
        df_smoothed = np.maximum(document_frequencies, 1)
        idf = np.log(n_documents / df_smoothed).astype(np.float32)
        return VisualVocabulary(words=self.words, n_words=self.n_words, idf=idf)
