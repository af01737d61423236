"""Stratified allocation of particle indices.

Splits ``n_total`` particle slots among a set of strata, either in contiguous
blocks or interleaved, with any remainder slots assigned to random strata.
Used by stratified initialization and stratified updates.
"""

from __future__ import annotations

import itertools
from collections.abc import Callable, Hashable, Iterable, Iterator, Mapping
from typing import Any

import jax
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Int, PRNGKeyArray, jaxtyped

from tracefilter.errors import ConfigurationError

__all__ = [
    "LAYOUTS",
    "stratum_assignments",
    "stratified_map",
    "choice_product",
]

LAYOUTS = ("contiguous", "interleaved")


@jaxtyped(typechecker=beartype)
def stratum_assignments(
    key: PRNGKeyArray,
    n_total: int,
    n_strata: int,
    layout: str = "contiguous",
) -> Int[Array, " n_total"]:
    """Assign each of ``n_total`` slots to one of ``n_strata`` strata.

    Each stratum first receives ``B = n_total // n_strata`` slots. With the
    "contiguous" layout, stratum ``k`` owns slots ``[k*B, (k+1)*B)``; with
    the "interleaved" layout it owns ``k, k + n_strata, k + 2*n_strata, ...``.
    The trailing ``n_total - n_strata*B`` slots are assigned to strata drawn
    uniformly at random.

    Parameters
    ----------
    key : PRNGKeyArray
        JAX random key, used only for the remainder slots.
    n_total : int
        Number of slots.
    n_strata : int
        Number of strata.
    layout : str
        "contiguous" or "interleaved".

    Returns
    -------
    strata : Array
        Stratum index for each slot.
    """
    if layout not in LAYOUTS:
        raise ConfigurationError(f"Layout {layout!r} not recognized.")
    if n_strata <= 0:
        raise ValueError("At least one stratum is required.")
    block_size = n_total // n_strata
    n_blocked = n_strata * block_size
    if layout == "contiguous":
        blocked = jnp.repeat(jnp.arange(n_strata), block_size)
    else:
        blocked = jnp.tile(jnp.arange(n_strata), block_size)
    remainder = jax.random.randint(key, (n_total - n_blocked,), 0, n_strata)
    return jnp.concatenate([blocked, remainder]).astype(int)


def stratified_map(
    key: PRNGKeyArray,
    fn: Callable[[int, Any], Any],
    n_total: int,
    strata: Iterable[Any],
    layout: str = "contiguous",
) -> list[Any]:
    """Call ``fn(i, stratum)`` for every slot ``i`` in stratified order.

    Returns the results indexed by slot.
    """
    strata = list(strata)
    assignments = stratum_assignments(key, n_total, len(strata), layout)
    return [fn(i, strata[k]) for i, k in enumerate(assignments.tolist())]


def choice_product(
    *choices: tuple[Hashable, Iterable[Any]] | Mapping[Hashable, Iterable[Any]],
) -> Iterator[dict[Hashable, Any]]:
    """Iterate over choice maps in the Cartesian product of address values.

    Accepts either ``(addr, values)`` tuples or a single mapping from
    addresses to value lists.

    Examples
    --------
    >>> list(choice_product(("a", [1, 2]), ("b", [3])))
    [{'a': 1, 'b': 3}, {'a': 2, 'b': 3}]
    """
    if len(choices) == 1 and isinstance(choices[0], Mapping):
        pairs = list(choices[0].items())
    else:
        pairs = list(choices)
    addrs = [addr for addr, _ in pairs]
    for values in itertools.product(*(list(vals) for _, vals in pairs)):
        yield dict(zip(addrs, values, strict=True))
