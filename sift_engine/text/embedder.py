"""
LexicalEmbedder — dense TF-IDF vectors for entries without a model embedding.

fit() fixes a vocabulary (the max_features terms with the highest document
frequency, ties by term) and its idf weights; embed() maps text onto that
vocabulary as an L2-normalised numpy vector. Text sharing no vocabulary term
embeds to the zero vector, which the graph treats as having no neighbours.
"""

import logging
from typing import Dict, Iterable, List, Optional

import numpy as np

from ..errors import ConfigurationError
from .tfidf import document_frequencies, inverse_document_frequencies, term_frequencies, tokenize

logger = logging.getLogger(__name__)


class LexicalEmbedder:
    def __init__(self, max_features: int = 512, lowercase: bool = True):
        if max_features < 1:
            raise ConfigurationError(f"max_features must be positive, got {max_features!r}")
        self.max_features = max_features
        self.lowercase = lowercase
        self.vocabulary: Dict[str, int] = {}
        self._idf: Optional[np.ndarray] = None

    @property
    def dimension(self) -> int:
        return len(self.vocabulary)

    @property
    def fitted(self) -> bool:
        return self._idf is not None

    def _tokens(self, text: str) -> List[str]:
        tokens = tokenize(text)
        return [t.lower() for t in tokens] if self.lowercase else tokens

    def fit(self, documents: Iterable[str]) -> "LexicalEmbedder":
        tfs = [term_frequencies(self._tokens(doc)) for doc in documents]
        if not tfs:
            raise ConfigurationError("cannot fit a lexical vocabulary on an empty corpus")
        df = document_frequencies(tfs)
        idf = inverse_document_frequencies(tfs)
        terms = sorted(df, key=lambda term: (-df[term], term))[: self.max_features]
        if not terms:
            raise ConfigurationError("corpus contains no alphabetic tokens")
        self.vocabulary = {term: i for i, term in enumerate(sorted(terms))}
        self._idf = np.array([idf[term] for term in sorted(terms)], dtype=np.float64)
        logger.info("[text] VOCABULARY_FIT documents=%s terms=%s", len(tfs), len(terms))
        return self

    def embed(self, text: str) -> np.ndarray:
        if self._idf is None:
            raise ConfigurationError("LexicalEmbedder.embed called before fit")
        vec = np.zeros(len(self.vocabulary), dtype=np.float64)
        for term, count in term_frequencies(self._tokens(text)).items():
            i = self.vocabulary.get(term)
            if i is not None:
                vec[i] = count * self._idf[i]
        norm = np.linalg.norm(vec)
        return vec / norm if norm > 0 else vec

    def embed_many(self, texts: Iterable[str]) -> List[List[float]]:
        """Embeddings as plain lists, ready for Entry records."""
        return [self.embed(text).tolist() for text in texts]
