import math
from typing import Optional, Sequence, Tuple

import numpy as np

from fvqtl.log import logger


class ScoreAggregationPolicy:
    """
    Collapse per-phenotype-column statistics into a single value.

    ``slod`` takes the mean across phenotype columns, ``mlod`` the maximum.
    A policy is chosen once per run and used at every comparison point.
    """

    NAMES = ("slod", "mlod")

    def __init__(self, name: str):
        name = (name or "").lower()
        if name not in self.NAMES:
            raise ValueError(f"usec must be one of {self.NAMES}, got '{name}'.")
        self.name = name

    @classmethod
    def from_name(cls, usec):
        if isinstance(usec, cls):
            return usec
        return cls(usec)

    def aggregate(self, values):
        """
        Aggregate along the last axis (phenotype columns).

        :param values: 1-D array of per-column statistics, or 2-D array with one row per candidate
        :return: float for 1-D input, 1-D array for 2-D input. NaN in any column gives NaN.
        """
        arr = np.asarray(values, dtype=float)
        if arr.shape[-1] == 0:
            raise ValueError("Cannot aggregate over zero phenotype columns.")
        if self.name == "slod":
            out = arr.mean(axis=-1)
        else:
            out = arr.max(axis=-1)
        if np.ndim(out) == 0:
            return float(out)
        return out

    def __eq__(self, other):
        return isinstance(other, ScoreAggregationPolicy) and other.name == self.name

    def __hash__(self):
        return hash(self.name)

    def __repr__(self):
        return f"ScoreAggregationPolicy('{self.name}')"


def normalize_penalties(penalties, additive_only: bool = True) -> Tuple[float, float, float]:
    """
    Expand or truncate a penalty vector to (main, heavy, light).

    :param penalties: one value (main effects only), two values (main, interaction) or three values
    :param additive_only: whether interactions are disallowed; a single value is only accepted then
    """
    if penalties is None:
        raise ValueError("penalties must be provided.")
    if np.isscalar(penalties):
        penalties = [penalties]
    values = [float(p) for p in penalties]
    if len(values) == 0:
        raise ValueError("penalties must contain at least one value.")
    if len(values) == 1:
        if not additive_only:
            raise ValueError("You must include a penalty for interaction terms.")
        values = [values[0], math.inf, math.inf]
    elif len(values) == 2:
        values = [values[0], values[1], values[1]]
    elif len(values) > 3:
        logger.warning("penalties should have length 3; using the first three values.")
        values = values[:3]
    if any(math.isnan(v) for v in values):
        raise ValueError(f"penalties must not contain NaN: {values}")
    return values[0], values[1], values[2]


def calc_plod(lod: float, counts: Sequence[int], penalties: Sequence[float]) -> float:
    """
    Penalized LOD: lod minus count-weighted penalties on main effects and heavy/light interactions.

    Counts of zero contribute nothing, so an infinite interaction penalty only
    bites when the model actually carries an interaction.
    """
    plod = float(lod)
    for count, penalty in zip(counts[:3], penalties[:3]):
        if count > 0:
            plod -= count * penalty
    return plod


class TieBreakSelector:
    """
    Seeded uniform choice among candidates sharing the extremal score.

    The generator is drawn from only when more than one candidate ties, so
    the draw sequence depends on the search path alone.
    """

    def __init__(self, seed: Optional[int] = None, rng: Optional[np.random.Generator] = None):
        self.seed = seed
        self.rng = rng if rng is not None else np.random.default_rng(seed)

    def _select(self, scores, best: str) -> Optional[int]:
        arr = np.asarray(scores, dtype=float).ravel()
        valid = ~np.isnan(arr)
        if not valid.any():
            return None
        extreme = arr[valid].max() if best == "max" else arr[valid].min()
        ties = np.flatnonzero(valid & (arr == extreme))
        if len(ties) > 1:
            return int(ties[self.rng.integers(len(ties))])
        return int(ties[0])

    def select_max(self, scores) -> Optional[int]:
        """Index of a maximal non-NaN score, or None if every score is NaN."""
        return self._select(scores, "max")

    def select_min(self, scores) -> Optional[int]:
        """Index of a minimal non-NaN score, or None if every score is NaN."""
        return self._select(scores, "min")
