"""Lexical vectors: tokeniser, TF-IDF and a dense embedder for entries without model embeddings."""

from .embedder import LexicalEmbedder
from .tfidf import (
    inverse_document_frequencies,
    sparse_cosine,
    term_frequencies,
    tf_idf,
    tokenize,
)

__all__ = [
    "LexicalEmbedder",
    "inverse_document_frequencies",
    "sparse_cosine",
    "term_frequencies",
    "tf_idf",
    "tokenize",
]
