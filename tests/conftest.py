"""Shared fixtures for particle filter tests."""

import jax
import pytest

from helpers import line_choicemap, line_model
from tracefilter.algorithms.initialize import initialize


@pytest.fixture
def key():
    return jax.random.PRNGKey(42)


@pytest.fixture
def line_state(key):
    """Line model filter with 100 particles and 3 observations on slope 1."""
    return initialize(key, line_model, (3,), line_choicemap(3, slope=1), 100)
