"""Tests for particle filter updates."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest
from jax.scipy import stats

from helpers import gaussian_model, line_choicemap, slope_proposal, x_proposal
from tracefilter.algorithms.initialize import initialize
from tracefilter.algorithms.translate import TraceTransform
from tracefilter.algorithms.update import update, update_particle
from tracefilter.errors import StructuralUpdateError


@pytest.fixture
def gaussian_state(key):
    """Gaussian model filter with 20 particles after one observation."""
    return initialize(key, gaussian_model, (1,), {("y", 1): 0.3}, 20)


def scale_x2(trace, aux):
    """Scale the proposed x_2 by three."""
    return {("x", 2): 3.0 * aux[("x", 2)]}, {}, jnp.log(3.0)


class TestUpdate:
    """Tests for update."""

    def test_internal_proposal(self, gaussian_state):
        """Without a proposal, increments are the new observation likelihoods."""
        old_traces = list(gaussian_state.traces)
        old_log_weights = gaussian_state.log_weights

        update(jax.random.PRNGKey(1), gaussian_state, (2,), {("y", 2): -0.2})

        increments = gaussian_state.log_weights - old_log_weights
        expected = jnp.asarray(
            [stats.norm.logpdf(-0.2, t[("x", 2)], 1.0) for t in gaussian_state.traces]
        )
        np.testing.assert_allclose(increments, expected, rtol=1e-8)
        for old, new in zip(old_traces, gaussian_state.traces):
            assert new[("x", 1)] == old[("x", 1)]
            assert new.get_args() == (2,)

    def test_custom_proposal(self, gaussian_state):
        """A prior proposal gives the same increments as the internal proposal."""
        old_log_weights = gaussian_state.log_weights

        update(
            jax.random.PRNGKey(1),
            gaussian_state,
            (2,),
            {("y", 2): -0.2},
            proposal=x_proposal,
            proposal_args=(2,),
        )

        increments = gaussian_state.log_weights - old_log_weights
        expected = jnp.asarray(
            [stats.norm.logpdf(-0.2, t[("x", 2)], 1.0) for t in gaussian_state.traces]
        )
        np.testing.assert_allclose(increments, expected, rtol=1e-8)

    def test_transform_proposal(self, gaussian_state):
        """A proposal with a transform extends traces through the bijection."""
        old_log_weights = gaussian_state.log_weights

        update(
            jax.random.PRNGKey(1),
            gaussian_state,
            (2,),
            {("y", 2): -0.2},
            proposal=x_proposal,
            proposal_args=(2,),
            transform=TraceTransform(scale_x2),
        )

        increments = gaussian_state.log_weights - old_log_weights
        for trace, increment in zip(gaussian_state.traces, increments):
            x2 = trace[("x", 2)]
            expected = (
                stats.norm.logpdf(x2, 0.0, 1.0)
                + stats.norm.logpdf(-0.2, x2, 1.0)
                - stats.norm.logpdf(x2 / 3.0, 0.0, 1.0)
                + jnp.log(3.0)
            )
            np.testing.assert_allclose(increment, expected, rtol=1e-8)

    def test_changed_observation_rejected(self, gaussian_state):
        """Changing an earlier observation is a structural error."""
        with pytest.raises(StructuralUpdateError):
            update(jax.random.PRNGKey(1), gaussian_state, (1,), {("y", 1): 0.9})

    def test_discard_requires_backward_proposal(self, line_state):
        """Proposals that overwrite choices need a backward proposal."""
        with pytest.raises(StructuralUpdateError):
            update(
                jax.random.PRNGKey(1),
                line_state,
                (3,),
                None,
                proposal=slope_proposal,
            )

    def test_backward_proposal(self, line_state):
        """Discarded choices are scored by the backward proposal."""
        old_traces = list(line_state.traces)
        old_log_weights = line_state.log_weights

        update(
            jax.random.PRNGKey(1),
            line_state,
            (3,),
            None,
            proposal=slope_proposal,
            backward_proposal=slope_proposal,
        )

        increments = line_state.log_weights - old_log_weights
        expected = jnp.asarray(
            [
                new.get_score() - old.get_score()
                for old, new in zip(old_traces, line_state.traces)
            ]
        )
        np.testing.assert_allclose(increments, expected, rtol=1e-8, atol=1e-10)

    def test_extends_line_model(self, line_state):
        """Extending the line model observes the next point."""
        observations = {("y", 4): 4.0}

        update(jax.random.PRNGKey(1), line_state, (4,), observations)

        for trace in line_state.traces:
            assert trace[("y", 4)] == 4.0
            assert trace.get_retval() == 4
            assert trace[("y", 3)] == line_choicemap(3, slope=1)[("y", 3)]

    def test_stratified(self, gaussian_state):
        """Stratified updates alternate strata across particles."""
        strata = [{("x", 2): -1.0}, {("x", 2): 1.0}]

        update(
            jax.random.PRNGKey(1),
            gaussian_state,
            (2,),
            {("y", 2): 0.0},
            strata=strata,
        )

        values = [trace[("x", 2)] for trace in gaussian_state.traces]
        assert values == [-1.0, 1.0] * 10

    def test_view(self, gaussian_state):
        """Updating a view leaves the other particles untouched."""
        old_traces = list(gaussian_state.traces)

        update(jax.random.PRNGKey(1), gaussian_state[:5], (2,), {("y", 2): 0.0})

        assert all(t.get_args() == (2,) for t in gaussian_state.traces[:5])
        assert gaussian_state.traces[5:] == old_traces[5:]

    def test_backward_without_proposal(self, gaussian_state):
        """A backward proposal alone is not a valid update."""
        with pytest.raises(ValueError):
            update_particle(
                jax.random.PRNGKey(0),
                gaussian_state.traces[0],
                (2,),
                None,
                backward_proposal=x_proposal,
            )
