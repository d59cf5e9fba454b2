"""
Contracts between the stepwise search and the collaborators that do the
regression work: genome scans, model fits and position refinement.

The search only ever talks to these interfaces; ``fvqtl.hk.HaleyKnottEngine``
is the in-process implementation.
"""
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from fvqtl.model import Formula, Locus, QTLSet


class ScanResult:
    """
    LOD per candidate position and phenotype column.

    ``frame`` has columns ``chr``, ``pos`` followed by one LOD column per phenotype,
    rows in genome order.
    """

    def __init__(self, frame: pd.DataFrame, lod_columns: Sequence[str]):
        missing = {"chr", "pos"} - set(frame.columns)
        if missing:
            raise ValueError(f"Scan result is missing columns: {missing}")
        self.frame = frame.reset_index(drop=True)
        self.lod_columns = list(lod_columns)

    @classmethod
    def from_arrays(cls, chrs: Sequence, positions: Sequence[float], lod, lod_columns: Sequence[str]):
        lod = np.asarray(lod, dtype=float).reshape(len(chrs), len(lod_columns))
        frame = pd.DataFrame({"chr": [str(c) for c in chrs], "pos": np.asarray(positions, dtype=float)})
        for k, name in enumerate(lod_columns):
            frame[name] = lod[:, k]
        return cls(frame, lod_columns)

    def __len__(self):
        return len(self.frame)

    @property
    def lod(self) -> np.ndarray:
        return self.frame[self.lod_columns].to_numpy(dtype=float)

    def aggregated(self, policy) -> np.ndarray:
        return np.atleast_1d(policy.aggregate(self.lod))

    def locus(self, index: int) -> Locus:
        row = self.frame.iloc[index]
        return Locus(str(row["chr"]), float(row["pos"]))

    def with_aggregate(self, policy) -> pd.DataFrame:
        """Copy of the scan table with an extra column named after the policy."""
        out = self.frame.copy()
        out[policy.name] = self.aggregated(policy)
        return out


class TwoLocusScan:
    """
    Two-dimensional scan over all position pairs.

    ``one[i]`` is the single-QTL LOD at position i, ``add[i, j]`` the additive
    two-QTL LOD and ``full[i, j]`` the LOD of the model with the interaction;
    the last axis indexes phenotype columns. Only pairs i < j are meaningful.
    """

    def __init__(self, positions: pd.DataFrame, one, add, full, lod_columns: Sequence[str]):
        self.positions = positions.reset_index(drop=True)
        self.one = np.asarray(one, dtype=float)
        self.add = np.asarray(add, dtype=float)
        self.full = np.asarray(full, dtype=float)
        self.lod_columns = list(lod_columns)

    def locus(self, index: int) -> Locus:
        row = self.positions.iloc[index]
        return Locus(str(row["chr"]), float(row["pos"]))

    def pair_indices(self):
        m = len(self.positions)
        return np.triu_indices(m, k=1)


class FitResult:
    """
    Per-phenotype-column LOD of a fitted model and, on request, the LOD lost
    when each QTL term is dropped (rows = term names, columns = phenotypes).
    """

    def __init__(self, lod, lod_columns: Sequence[str], drop: Optional[pd.DataFrame] = None):
        self.lod = np.asarray(lod, dtype=float)
        self.lod_columns = list(lod_columns)
        self.drop = drop


class GenomeScanAdapter:
    def scan_single_locus(self, pheno_cols: List[str], covar: Optional[pd.DataFrame]) -> ScanResult:
        raise NotImplementedError

    def scan_two_locus(self, pheno_cols: List[str], covar: Optional[pd.DataFrame]) -> TwoLocusScan:
        raise NotImplementedError

    def scan_add_locus(self, qtl: QTLSet, formula: Formula, pheno_cols: List[str],
                       covar: Optional[pd.DataFrame], interacting_with: Optional[int] = None) -> ScanResult:
        """
        Incremental LOD of a new locus Q(n+1) added to ``formula`` at each candidate
        position, entered with ``Q<interacting_with>:Q(n+1)`` when given.
        """
        raise NotImplementedError


class ModelFitAdapter:
    def fit(self, qtl: QTLSet, formula: Formula, pheno_cols: List[str],
            covar: Optional[pd.DataFrame], dropone: bool = False) -> FitResult:
        raise NotImplementedError


class PositionRefinementAdapter:
    def refine(self, qtl: QTLSet, formula: Formula, pheno_cols: List[str],
               covar: Optional[pd.DataFrame], policy) -> QTLSet:
        """Return ``qtl`` with improved positions; term structure is unchanged."""
        raise NotImplementedError
