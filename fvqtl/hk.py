"""
Haley-Knott regression (method "hk") and multiple-imputation regression
(method "imp") for multi-column phenotypes.

LOD scores are reported per phenotype column, relative to the model that
holds only the intercept and the additive covariates.
"""
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy.special import logsumexp

from fvqtl.adapters import (
    FitResult,
    GenomeScanAdapter,
    ModelFitAdapter,
    PositionRefinementAdapter,
    ScanResult,
    TwoLocusScan,
)
from fvqtl.data import CrossData
from fvqtl.log import logger
from fvqtl.model import Formula, QTLSet, Term
from fvqtl.scoring import ScoreAggregationPolicy

LN10 = np.log(10.0)


def _rss(X: np.ndarray, Y: np.ndarray) -> np.ndarray:
    beta, *_ = np.linalg.lstsq(X, Y, rcond=None)
    resid = Y - X @ beta
    return (resid ** 2).sum(axis=0)


class HaleyKnottEngine(GenomeScanAdapter, ModelFitAdapter, PositionRefinementAdapter):
    """
    Genome scans, model fits and position refinement on one prepared cross.

    :param cross: cross data (individuals already filtered)
    :param method: "hk" uses genotype probabilities, "imp" uses the imputations
    :param n_jobs: worker threads used to evaluate candidate positions
    :param maxit: maximum number of refinement passes over all QTL
    """

    def __init__(self, cross: CrossData, method: str = "hk", n_jobs: int = 1, maxit: int = 10):
        if method not in ("hk", "imp"):
            raise ValueError(f"method must be 'hk' or 'imp', got '{method}'.")
        if method == "hk" and not cross.has_prob:
            raise ValueError("method='hk' requires genotype probabilities.")
        if method == "imp" and not cross.has_draws:
            raise ValueError("method='imp' requires genotype imputations.")
        self.cross = cross
        self.method = method
        self.n_jobs = max(1, int(n_jobs or 1))
        self.maxit = maxit

    # ------------------------
    # building blocks
    # ------------------------

    @property
    def n_real(self) -> int:
        """Number of genotype realizations: 1 for hk, the number of imputations for imp."""
        return 1 if self.method == "hk" else self.cross.n_draws

    def _map(self, fn: Callable, items: Sequence) -> List:
        # executor.map keeps input order, so results line up with the grid
        if self.n_jobs == 1 or len(items) < 2:
            return [fn(item) for item in items]
        with ThreadPoolExecutor(max_workers=self.n_jobs) as executor:
            return list(executor.map(fn, items))

    def _locus_index(self, chrom: str, pos: float):
        geno = self.cross.geno.get(str(chrom))
        if geno is None:
            raise ValueError(f"Chromosome {chrom} not in cross.")
        return str(chrom), geno.nearest(pos)

    def _geno(self, chrom: str, idx: int) -> np.ndarray:
        """Design columns of a QTL at grid index ``idx``: shape (n_real, n_ind, n_gen - 1)."""
        c = self.cross.geno[chrom]
        if self.method == "hk":
            return c.prob[None, :, idx, 1:]
        draws = c.draws[:, idx, :].T
        onehot = (draws[:, :, None] == np.arange(c.n_gen)).astype(float)
        return onehot[:, :, 1:]

    def _model_geno(self, qtl: QTLSet) -> Dict[int, np.ndarray]:
        return {i: self._geno(*self._locus_index(locus.chr, locus.pos)) for i, locus in enumerate(qtl, start=1)}

    def _null(self, pheno_cols: List[str], covar: Optional[pd.DataFrame]):
        Y = self.cross.pheno[list(pheno_cols)].to_numpy(dtype=float)
        X0 = np.ones((Y.shape[0], 1))
        if covar is not None and covar.shape[1] > 0:
            if len(covar) != Y.shape[0]:
                raise ValueError(f"covar has {len(covar)} rows, cross has {Y.shape[0]} individuals.")
            X0 = np.hstack([X0, covar.to_numpy(dtype=float)])
        return Y, X0, _rss(X0, Y)

    @staticmethod
    def _design(X0: np.ndarray, geno: Dict[int, np.ndarray], terms: Sequence[Term], r: int) -> np.ndarray:
        blocks = [X0]
        n = X0.shape[0]
        for term in terms:
            if term.kind == "qtl":
                blocks.append(geno[term.loci[0]][r])
            elif term.kind == "int":
                a = geno[term.loci[0]][r]
                b = geno[term.loci[1]][r]
                blocks.append((a[:, :, None] * b[:, None, :]).reshape(n, -1))
        return np.hstack(blocks)

    def _lod(self, Y, X0, rss0, geno: Dict[int, np.ndarray], terms: Sequence[Term]) -> np.ndarray:
        """LOD per realization and phenotype column, shape (n_real, n_phe)."""
        n = Y.shape[0]
        out = np.empty((self.n_real, Y.shape[1]))
        with np.errstate(divide="ignore", invalid="ignore"):
            for r in range(self.n_real):
                rss = _rss(self._design(X0, geno, terms, r), Y)
                out[r] = n / 2.0 * np.log10(rss0 / rss)
        return out

    def _combine(self, lod_r: np.ndarray) -> np.ndarray:
        """Collapse realizations: identity for hk, log10 of the mean of 10^LOD for imp."""
        if lod_r.shape[0] == 1:
            return lod_r[0]
        return logsumexp(lod_r * LN10, axis=0) / LN10 - np.log10(lod_r.shape[0])

    def _grid_items(self):
        return [(name, idx) for name, c in self.cross.geno.items() for idx in range(len(c.positions))]

    @staticmethod
    def _check_formula(qtl: QTLSet, formula: Formula):
        bad = [i for i in formula.referenced_qtl() if i > qtl.n_qtl]
        if bad:
            raise ValueError(f"Formula {formula} references QTL beyond the {qtl.n_qtl} in the model.")

    # ------------------------
    # GenomeScanAdapter
    # ------------------------

    def scan_single_locus(self, pheno_cols, covar) -> ScanResult:
        Y, X0, rss0 = self._null(pheno_cols, covar)
        terms = [Term.main(1)]

        def one(item):
            return self._combine(self._lod(Y, X0, rss0, {1: self._geno(*item)}, terms))

        lods = self._map(one, self._grid_items())
        grid = self.cross.grid()
        return ScanResult.from_arrays(grid["chr"], grid["pos"], np.vstack(lods), pheno_cols)

    def scan_add_locus(self, qtl, formula, pheno_cols, covar, interacting_with=None) -> ScanResult:
        self._check_formula(qtl, formula)
        new = qtl.n_qtl + 1
        terms = formula.qtl_terms + [Term.main(new)]
        if interacting_with is not None:
            if not 1 <= interacting_with <= qtl.n_qtl:
                raise ValueError(f"Q{interacting_with} is not in the model.")
            terms.append(Term.interaction(interacting_with, new))
        Y, X0, rss0 = self._null(pheno_cols, covar)
        geno = self._model_geno(qtl)
        base = self._lod(Y, X0, rss0, geno, formula.qtl_terms)

        def one(item):
            full = self._lod(Y, X0, rss0, {**geno, new: self._geno(*item)}, terms)
            return self._combine(full - base)

        lods = self._map(one, self._grid_items())
        grid = self.cross.grid()
        return ScanResult.from_arrays(grid["chr"], grid["pos"], np.vstack(lods), pheno_cols)

    def scan_two_locus(self, pheno_cols, covar) -> TwoLocusScan:
        Y, X0, rss0 = self._null(pheno_cols, covar)
        items = self._grid_items()
        m, p = len(items), len(pheno_cols)
        logger.info(f"Two-dimensional scan over {m * (m - 1) // 2} position pairs...")
        one_terms = [Term.main(1)]
        add_terms = [Term.main(1), Term.main(2)]
        full_terms = add_terms + [Term.interaction(1, 2)]

        def single(item):
            return self._combine(self._lod(Y, X0, rss0, {1: self._geno(*item)}, one_terms))

        def pair(ij):
            geno = {1: self._geno(*items[ij[0]]), 2: self._geno(*items[ij[1]])}
            return (self._combine(self._lod(Y, X0, rss0, geno, add_terms)),
                    self._combine(self._lod(Y, X0, rss0, geno, full_terms)))

        one = np.vstack(self._map(single, items))
        add = np.full((m, m, p), np.nan)
        full = np.full((m, m, p), np.nan)
        pairs = list(zip(*np.triu_indices(m, k=1)))
        for (i, j), (a, f) in zip(pairs, self._map(pair, pairs)):
            add[i, j] = a
            full[i, j] = f
        return TwoLocusScan(self.cross.grid(), one, add, full, pheno_cols)

    # ------------------------
    # ModelFitAdapter
    # ------------------------

    def fit(self, qtl, formula, pheno_cols, covar, dropone=False) -> FitResult:
        self._check_formula(qtl, formula)
        Y, X0, rss0 = self._null(pheno_cols, covar)
        geno = self._model_geno(qtl)
        terms = formula.qtl_terms
        full = self._lod(Y, X0, rss0, geno, terms)
        drop = None
        if dropone:
            rows = {}
            for term in terms:
                if term.kind == "qtl":
                    # dropping a main effect takes its interactions with it
                    reduced = [t for t in terms if term.loci[0] not in t.loci]
                else:
                    reduced = [t for t in terms if t != term]
                rows[term.name] = self._combine(full - self._lod(Y, X0, rss0, geno, reduced))
            drop = pd.DataFrame.from_dict(rows, orient="index", columns=list(pheno_cols))
        return FitResult(self._combine(full), pheno_cols, drop=drop)

    # ------------------------
    # PositionRefinementAdapter
    # ------------------------

    def refine(self, qtl, formula, pheno_cols, covar, policy=None) -> QTLSet:
        """
        Move each QTL along its chromosome, others held fixed, to the position
        maximizing the aggregated LOD of the full model. A QTL stays between its
        neighbours on the same chromosome. Passes repeat until nothing moves.
        """
        self._check_formula(qtl, formula)
        policy = ScoreAggregationPolicy.from_name(policy or "slod")
        if qtl.n_qtl == 0:
            return qtl
        Y, X0, rss0 = self._null(pheno_cols, covar)
        terms = formula.qtl_terms
        chrs = qtl.chrs
        idx = [self._locus_index(c, p)[1] for c, p in zip(chrs, qtl.positions)]
        start = list(idx)

        for _ in range(self.maxit):
            moved = False
            for i in range(qtl.n_qtl):
                grid = self.cross.geno[chrs[i]].positions
                cur = grid[idx[i]]
                others = [grid[idx[k]] for k in range(qtl.n_qtl) if k != i and chrs[k] == chrs[i]]
                lower = max([o for o in others if o < cur], default=-np.inf)
                upper = min([o for o in others if o > cur], default=np.inf)
                candidates = [k for k, g in enumerate(grid) if lower < g < upper]
                geno = {j + 1: self._geno(chrs[j], idx[j]) for j in range(qtl.n_qtl)}

                def score(k, i=i, geno=geno):
                    local = dict(geno)
                    local[i + 1] = self._geno(chrs[i], k)
                    return policy.aggregate(self._combine(self._lod(Y, X0, rss0, local, terms)))

                scores = np.array(self._map(score, candidates), dtype=float)
                if np.isnan(scores).all():
                    continue
                best = np.nanmax(scores)
                ties = [candidates[k] for k in np.flatnonzero(scores == best)]
                if idx[i] not in ties:
                    idx[i] = ties[0]
                    moved = True
            if not moved:
                break

        positions = [
            float(self.cross.geno[c].positions[k]) if k != s else p
            for c, k, s, p in zip(chrs, idx, start, qtl.positions)
        ]
        return qtl.with_positions(positions)
