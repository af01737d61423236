"""Tests for particle filter states and views."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest
from jax.scipy.special import logsumexp

from helpers import make_state
from tracefilter.core.particles import (
    ParticleFilterState,
    ParticleFilterSubState,
    ParticleFilterView,
)
from tracefilter.core.resampling import resample


class TestParticleFilterState:
    """Tests for the full particle filter state."""

    def test_from_traces_defaults(self):
        """Weights default to zero and parents to the identity."""
        state = ParticleFilterState.from_traces(["a", "b", "c"])

        assert state.n_particles == 3
        assert len(state) == 3
        np.testing.assert_array_equal(state.log_weights, jnp.zeros(3))
        np.testing.assert_array_equal(state.parents, jnp.arange(3))
        assert state.log_ml_est == 0.0
        assert state.new_traces == [None, None, None]

    def test_from_traces_shape_mismatch(self):
        """The number of weights must match the number of traces."""
        with pytest.raises(ValueError):
            ParticleFilterState.from_traces(["a", "b"], [0.0])

    def test_normalized_weights(self):
        """Normalized weights sum to one in both representations."""
        state = make_state(jnp.array([0.0, 1.0, 2.0]))

        np.testing.assert_allclose(jnp.sum(state.normalized_weights()), 1.0)
        np.testing.assert_allclose(
            logsumexp(state.log_normalized_weights()), 0.0, atol=1e-12
        )

    def test_log_ml_estimate(self):
        """The estimate combines the running total and the current weights."""
        state = make_state(jnp.log(jnp.array([1.0, 3.0])))
        state.log_ml_est = -1.0

        np.testing.assert_allclose(state.log_ml_estimate(), -1.0 + jnp.log(2.0))

    def test_copy_is_independent(self):
        """Mutating the original does not affect a copy."""
        state = make_state(jax.random.normal(jax.random.PRNGKey(0), shape=(10,)))
        snapshot = state.copy()

        resample(jax.random.PRNGKey(1), state, "multinomial")

        assert snapshot.traces == list(range(10))
        np.testing.assert_array_equal(snapshot.parents, jnp.arange(10))
        assert snapshot.log_ml_est == 0.0

    def test_sample_unweighted_traces(self):
        """Sampled traces follow the normalized weights."""
        state = make_state(jnp.array([-jnp.inf, 0.0, -jnp.inf]))

        traces = state.sample_unweighted_traces(jax.random.PRNGKey(0), 5)

        assert traces == [1] * 5

    def test_view_base_is_abstract(self):
        """The shared base leaves the commit hooks to its subclasses."""
        with pytest.raises(TypeError):
            ParticleFilterView()


class TestParticleFilterSubState:
    """Tests for views into a particle filter state."""

    def test_slice_view(self):
        """Slicing selects the corresponding particles."""
        state = make_state(jnp.arange(10, dtype=float))

        view = state[2:5]

        assert isinstance(view, ParticleFilterSubState)
        assert view.traces == [2, 3, 4]
        np.testing.assert_array_equal(view.log_weights, [2.0, 3.0, 4.0])

    def test_index_list_view(self):
        """Views accept arbitrary index lists."""
        state = make_state(jnp.arange(10, dtype=float))

        view = state[[7, 1, 4]]

        assert view.traces == [7, 1, 4]

    def test_nested_view(self):
        """A view of a view indexes into the outer view."""
        state = make_state(jnp.arange(10, dtype=float))

        view = state[2:8][1:3]

        assert view.traces == [3, 4]
        assert view.source is state

    def test_out_of_range(self):
        """Out-of-range indices raise IndexError."""
        with pytest.raises(IndexError):
            make_state(jnp.zeros(3))[[0, 3]]

    def test_weights_write_through(self):
        """Setting a view's weights updates the source."""
        state = make_state(jnp.zeros(4))

        state[1:3].log_weights = jnp.array([5.0, 6.0])

        np.testing.assert_array_equal(state.log_weights, [0.0, 5.0, 6.0, 0.0])

    def test_copy_rejected(self):
        """Views cannot be copied."""
        with pytest.raises(TypeError):
            make_state(jnp.zeros(4))[1:3].copy()

    def test_shares_log_ml_estimate(self):
        """A view reports its source's running log-ML total."""
        state = make_state(jnp.zeros(4))
        state.log_ml_est = -3.0

        assert state[0:2].log_ml_est == -3.0


class TestBlockwiseResampling:
    """Tests for resampling disjoint views independently."""

    @pytest.mark.parametrize("method", ["multinomial", "residual", "stratified"])
    def test_log_ml_estimate_preserved(self, method):
        """Resampling each block leaves the overall estimate unchanged."""
        key = jax.random.PRNGKey(11)
        log_weights = jax.random.normal(key, shape=(40,))
        state = make_state(log_weights)
        before = state.log_ml_estimate()

        for i, block_key in enumerate(jax.random.split(key, 4)):
            resample(block_key, state[10 * i : 10 * (i + 1)], method)

        assert state.log_ml_est == 0.0
        np.testing.assert_allclose(state.log_ml_estimate(), before, rtol=1e-10)

    @pytest.mark.parametrize("method", ["multinomial", "residual", "stratified"])
    def test_block_mass_preserved(self, method):
        """Each block keeps its own total weight."""
        key = jax.random.PRNGKey(12)
        log_weights = 2.0 * jax.random.normal(key, shape=(20,))
        state = make_state(log_weights)

        resample(key, state[5:15], method)

        np.testing.assert_allclose(
            logsumexp(state.log_weights[5:15]), logsumexp(log_weights[5:15])
        )
        np.testing.assert_array_equal(state.log_weights[:5], log_weights[:5])
        np.testing.assert_array_equal(state.log_weights[15:], log_weights[15:])

    def test_provenance_within_block(self):
        """Resampled particles descend from particles of the same block."""
        key = jax.random.PRNGKey(13)
        state = make_state(jax.random.normal(key, shape=(20,)))

        resample(key, state[10:20], "multinomial")

        for j in range(10, 20):
            assert state.traces[j] == 10 + int(state.parents[j])
        assert state.traces[:10] == list(range(10))
        np.testing.assert_array_equal(state.parents[:10], jnp.arange(10))
