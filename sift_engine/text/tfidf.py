"""
Lexical similarity — tokenisation, TF, smoothed IDF and sparse cosine.

Sparse vectors are plain dicts of term -> weight.
"""

import math
import re
from collections import Counter
from typing import Dict, Iterable, List, Mapping, Sequence

_LETTERS = re.compile(r"[^\W\d_]+")


def tokenize(text: str) -> List[str]:
    """Split on every non-alphabetic character; empty pieces are dropped, case is kept."""
    return _LETTERS.findall(text or "")


def term_frequencies(tokens: Iterable[str]) -> Dict[str, float]:
    """Raw term counts."""
    return {term: float(count) for term, count in Counter(tokens).items()}


def document_frequencies(docs: Sequence[Mapping[str, float]]) -> Dict[str, int]:
    df: Counter = Counter()
    for tf in docs:
        df.update(tf.keys())
    return dict(df)


def inverse_document_frequencies(docs: Sequence[Mapping[str, float]]) -> Dict[str, float]:
    """Smoothed idf = ln((N + 1) / (df + 1)) + 1, always >= 1."""
    n = len(docs)
    return {
        term: math.log((n + 1.0) / (df + 1.0)) + 1.0
        for term, df in document_frequencies(docs).items()
    }


def tf_idf(corpus: Sequence[Sequence[str]]) -> List[Dict[str, float]]:
    """Per-document tf * idf weights for a tokenised corpus."""
    tfs = [term_frequencies(doc) for doc in corpus]
    idf = inverse_document_frequencies(tfs)
    return [{term: count * idf[term] for term, count in tf.items()} for tf in tfs]


def sparse_cosine(a: Mapping[str, float], b: Mapping[str, float]) -> float:
    """Cosine of two sparse vectors; 0 when either is empty or all zero."""
    norm_a = math.sqrt(sum(v * v for v in a.values()))
    norm_b = math.sqrt(sum(v * v for v in b.values()))
    denom = norm_a * norm_b
    if denom == 0.0:
        return 0.0
    short, long = (a, b) if len(a) < len(b) else (b, a)
    dot = sum(v * long[k] for k, v in short.items() if k in long)
    return dot / denom
