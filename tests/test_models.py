"""Tests for distributions and the reference program runtime."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest
from jax.scipy import stats

from helpers import gaussian_model, line_choicemap, line_model
from tracefilter.models import (
    Bernoulli,
    Distribution,
    ExecutionContext,
    Normal,
    Uniform,
    UniformDiscrete,
    generative,
    merge_choices,
)


class TestDistributions:
    """Tests for primitive distributions."""

    def test_normal_sample_shape(self):
        """Sample should return a scalar."""
        sample = Normal(loc=0.0, scale=1.0).sample(jax.random.PRNGKey(42))

        assert sample.shape == ()

    def test_normal_log_prob(self):
        """Log density at the mean is -0.5 * log(2 * pi * scale^2)."""
        log_prob = Normal(loc=1.0, scale=2.0).log_prob(1.0)

        np.testing.assert_allclose(log_prob, -0.5 * jnp.log(2 * jnp.pi * 4.0))

    def test_uniform_support(self):
        """Uniform has constant density inside and -inf outside its support."""
        dist = Uniform(low=0.0, high=4.0)

        np.testing.assert_allclose(dist.log_prob(1.0), -jnp.log(4.0))
        assert dist.log_prob(5.0) == -jnp.inf

    def test_bernoulli_log_prob(self):
        """Bernoulli log mass for both outcomes."""
        dist = Bernoulli(p=0.25)

        np.testing.assert_allclose(dist.log_prob(True), jnp.log(0.25))
        np.testing.assert_allclose(dist.log_prob(False), jnp.log(0.75))

    def test_uniform_discrete_inclusive(self):
        """UniformDiscrete covers both endpoints."""
        dist = UniformDiscrete(low=-2, high=2)
        keys = jax.random.split(jax.random.PRNGKey(0), 200)

        samples = {int(dist.sample(k)) for k in keys}

        assert samples == {-2, -1, 0, 1, 2}
        np.testing.assert_allclose(dist.log_prob(2), -jnp.log(5.0))
        assert dist.log_prob(3) == -jnp.inf
        assert dist.log_prob(0.5) == -jnp.inf

    def test_base_is_abstract(self):
        """Distributions must implement sample and log_prob."""
        with pytest.raises(TypeError):
            Distribution()

        class OnlySample(Distribution):
            def sample(self, key):
                return jnp.array(0.0)

        with pytest.raises(TypeError):
            OnlySample()

    def test_execution_context_is_abstract(self):
        """Execution contexts must decide how choices are made."""
        with pytest.raises(TypeError):
            ExecutionContext(jax.random.PRNGKey(0))


class TestSimulate:
    """Tests for unconstrained execution."""

    def test_visits_every_address(self):
        """Simulating the line model samples slope, outliers and observations."""
        trace = line_model.simulate(jax.random.PRNGKey(0), (3,))

        assert set(trace.get_choices()) == {
            "slope",
            ("outlier", 1),
            ("outlier", 2),
            ("outlier", 3),
            ("y", 1),
            ("y", 2),
            ("y", 3),
        }
        assert trace.get_retval() == 3
        assert trace.get_args() == (3,)
        assert trace.get_gen_fn() is line_model

    def test_score_is_joint_log_density(self):
        """The score is the sum of the log densities of all choices."""
        trace = gaussian_model.simulate(jax.random.PRNGKey(1), (1,))
        x, y = trace[("x", 1)], trace[("y", 1)]

        expected = stats.norm.logpdf(x, 0.0, 1.0) + stats.norm.logpdf(y, x, 1.0)

        np.testing.assert_allclose(trace.get_score(), expected, rtol=1e-10)

    def test_duplicate_address(self):
        """Visiting an address twice is an error."""

        @generative
        def twice(ctx):
            ctx.sample("a", Normal())
            ctx.sample("a", Normal())

        with pytest.raises(ValueError):
            twice.simulate(jax.random.PRNGKey(0), ())


class TestGenerate:
    """Tests for constrained execution."""

    def test_constraints_respected(self):
        """Constrained addresses take the given values."""
        observations = line_choicemap(3, slope=1)

        trace, _ = line_model.generate(
            jax.random.PRNGKey(0), (3,), merge_choices(observations, {"slope": 1})
        )

        assert trace["slope"] == 1
        for addr, value in observations.items():
            assert trace[addr] == value

    def test_weight_is_constrained_log_density(self):
        """The weight is the log density of the constrained choices only."""
        trace, log_weight = gaussian_model.generate(
            jax.random.PRNGKey(0), (1,), {("y", 1): 0.5}
        )

        expected = stats.norm.logpdf(0.5, trace[("x", 1)], 1.0)

        np.testing.assert_allclose(log_weight, expected, rtol=1e-10)

    def test_fully_constrained_weight_equals_score(self):
        """Constraining every choice makes the weight equal to the score."""
        choices = {("x", 1): 0.2, ("y", 1): -0.3}

        trace, log_weight = gaussian_model.generate(jax.random.PRNGKey(0), (1,), choices)

        np.testing.assert_allclose(log_weight, trace.get_score(), rtol=1e-10)

    def test_unvisited_constraint(self):
        """Constraints at addresses the program never visits are an error."""
        with pytest.raises(ValueError):
            gaussian_model.generate(jax.random.PRNGKey(0), (1,), {("y", 2): 0.0})


class TestAssess:
    """Tests for scoring complete choice maps."""

    def test_matches_score(self):
        """Assessing a trace's choices reproduces its score."""
        trace = line_model.simulate(jax.random.PRNGKey(3), (2,))

        score, retval = line_model.assess((2,), trace.get_choices())

        np.testing.assert_allclose(score, trace.get_score(), rtol=1e-10)
        assert retval == 2

    def test_missing_choice(self):
        """Every visited address must be given."""
        with pytest.raises(ValueError):
            gaussian_model.assess((1,), {("x", 1): 0.0})


class TestUpdate:
    """Tests for incremental re-execution."""

    def test_extend_with_new_observation(self):
        """Extending the model samples fresh latents and scores the observation."""
        key = jax.random.PRNGKey(0)
        trace, _ = gaussian_model.generate(key, (1,), {("y", 1): 0.1})

        new_trace, log_weight, discard = gaussian_model.update(
            jax.random.PRNGKey(1), trace, (2,), {("y", 2): 0.7}
        )

        assert discard == {}
        assert new_trace[("x", 1)] == trace[("x", 1)]
        expected = stats.norm.logpdf(0.7, new_trace[("x", 2)], 1.0)
        np.testing.assert_allclose(log_weight, expected, rtol=1e-10)

    def test_discard_overwritten_values(self):
        """Overwritten values are returned in the discard."""
        trace = line_model.simulate(jax.random.PRNGKey(0), (1,))
        new_slope = 2 if trace["slope"] != 2 else -2

        new_trace, log_weight, discard = line_model.update(
            jax.random.PRNGKey(1), trace, (1,), {"slope": new_slope}
        )

        assert discard == {"slope": trace["slope"]}
        assert new_trace["slope"] == new_slope
        np.testing.assert_allclose(
            log_weight, new_trace.get_score() - trace.get_score(), rtol=1e-10
        )

    def test_discard_unvisited_addresses(self):
        """Addresses no longer visited are returned in the discard."""
        trace = gaussian_model.simulate(jax.random.PRNGKey(0), (2,))

        new_trace, _, discard = gaussian_model.update(
            jax.random.PRNGKey(1), trace, (1,)
        )

        assert set(discard) == {("x", 2), ("y", 2)}
        assert set(new_trace.get_choices()) == {("x", 1), ("y", 1)}
