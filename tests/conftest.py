"""Shared fixtures for the engine tests."""

import math
from datetime import datetime, timedelta, timezone

import pytest

from sift_engine.models.config import build_config

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

# Two well separated clusters: {a, b, c} and {d, e}
CLUSTER_EMBEDDINGS = {
    "a": [1.0, 0.1, 0.0],
    "b": [1.0, 0.0, 0.1],
    "c": [1.0, 0.1, 0.1],
    "d": [-1.0, 0.1, 0.0],
    "e": [-1.0, 0.0, 0.1],
}

# Three unit vectors 120 degrees apart: every pairwise cosine is -0.5
TRIANGLE_EMBEDDINGS = {
    "a": [1.0, 0.0],
    "b": [-0.5, math.sqrt(3) / 2],
    "c": [-0.5, -math.sqrt(3) / 2],
}


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def at():
    """at(hours=..., minutes=..., days=...) -> T0 shifted."""

    def _at(**delta):
        return T0 + timedelta(**delta)

    return _at


@pytest.fixture
def make_config():
    return build_config


@pytest.fixture
def cluster_embeddings():
    return dict(CLUSTER_EMBEDDINGS)


@pytest.fixture
def triangle_embeddings():
    return dict(TRIANGLE_EMBEDDINGS)
