import logging

import numpy as np
import pandas as pd
import pytest

from fvqtl.adapters import (
    FitResult,
    GenomeScanAdapter,
    ModelFitAdapter,
    PositionRefinementAdapter,
    ScanResult,
    TwoLocusScan,
)
from fvqtl.data import ChromosomeGeno, CrossData
from fvqtl.log import logger
from fvqtl.model import Term


GRID = [float(p) for p in range(0, 100, 10)]


def simulate_backcross(n_ind=100, chrs=("1", "2"), qtl=("1", 40.0), effects=(1.5, 2.0, 2.5),
                       seed=7, n_draws=4, with_prob=True, with_draws=True):
    """Fully informative backcross genotypes on a 10 cM grid; one QTL acting on every phenotype column."""
    rng = np.random.default_rng(seed)
    geno = {}
    true_g = None
    for name in chrs:
        g = np.empty((n_ind, len(GRID)), dtype=int)
        g[:, 0] = rng.integers(0, 2, n_ind)
        for k in range(1, len(GRID)):
            r = 0.5 * (1 - np.exp(-2 * (GRID[k] - GRID[k - 1]) / 100.0))
            flip = rng.random(n_ind) < r
            g[:, k] = np.where(flip, 1 - g[:, k - 1], g[:, k - 1])
        prob = np.stack([1.0 - g, g.astype(float)], axis=2) if with_prob else None
        draws = np.repeat(g[:, :, None], n_draws, axis=2) if with_draws else None
        geno[name] = ChromosomeGeno(name, GRID, prob=prob, draws=draws, n_gen=2)
        if name == qtl[0]:
            true_g = g[:, GRID.index(qtl[1])]
    pheno = pd.DataFrame({
        f"t{k + 1}": effect * true_g + rng.normal(0.0, 1.0, n_ind) for k, effect in enumerate(effects)
    })
    samples = [f"ind{i + 1}" for i in range(n_ind)]
    return CrossData(geno, pheno, samples)


@pytest.fixture
def cross():
    return simulate_backcross()


class ScriptedEngine(GenomeScanAdapter, ModelFitAdapter, PositionRefinementAdapter):
    """
    Collaborator double whose LODs are a lookup: a model's LOD per phenotype column is the
    sum of the signals of its main-effect loci plus the bonuses of its interaction terms.
    """

    def __init__(self, signals, bonus=None, chrs=("1",), n_cols=1, moves=None):
        self.chrs = list(chrs)
        self.n_cols = n_cols
        self.signals = {}
        for key, value in signals.items():
            self.signals[key] = np.resize(np.asarray(value, dtype=float), n_cols)
        self.bonus = {
            frozenset((str(c), float(p)) for c, p in k): np.resize(np.asarray(v, dtype=float), n_cols)
            for k, v in (bonus or {}).items()
        }
        self.moves = dict(moves or {})
        self.calls = []

    def grid(self):
        return [(c, p) for c in self.chrs for p in GRID]

    def signal(self, locus):
        return self.signals.get((locus[0], locus[1]), np.zeros(self.n_cols))

    def model_lod(self, loci, formula):
        total = np.zeros(self.n_cols)
        for i in formula.mains:
            total = total + self.signal(loci[i - 1])
        for i, j in formula.interactions:
            total = total + self.bonus.get(frozenset([loci[i - 1], loci[j - 1]]), np.zeros(self.n_cols))
        return total

    def _result(self, values, pheno_cols):
        grid = self.grid()
        return ScanResult.from_arrays([c for c, _ in grid], [p for _, p in grid], np.vstack(values), pheno_cols)

    def scan_single_locus(self, pheno_cols, covar):
        self.calls.append("scan_single")
        return self._result([self.signal(g) for g in self.grid()], pheno_cols)

    def scan_two_locus(self, pheno_cols, covar):
        self.calls.append("scan_two")
        grid = self.grid()
        m = len(grid)
        one = np.vstack([self.signal(g) for g in grid])
        add = np.full((m, m, self.n_cols), np.nan)
        full = np.full((m, m, self.n_cols), np.nan)
        for i in range(m):
            for j in range(i + 1, m):
                add[i, j] = one[i] + one[j]
                full[i, j] = add[i, j] + self.bonus.get(frozenset([grid[i], grid[j]]), np.zeros(self.n_cols))
        positions = pd.DataFrame({"chr": [c for c, _ in grid], "pos": [p for _, p in grid]})
        return TwoLocusScan(positions, one, add, full, pheno_cols)

    def scan_add_locus(self, qtl, formula, pheno_cols, covar, interacting_with=None):
        self.calls.append(("scan_add", interacting_with))
        loci = [(l.chr, l.pos) for l in qtl]
        values = []
        for g in self.grid():
            if g in loci:
                # occupied positions are not candidates
                values.append(np.full(self.n_cols, np.nan))
                continue
            gain = self.signal(g)
            if interacting_with is not None:
                gain = gain + self.bonus.get(frozenset([loci[interacting_with - 1], g]), np.zeros(self.n_cols))
            values.append(gain)
        return self._result(values, pheno_cols)

    def fit(self, qtl, formula, pheno_cols, covar, dropone=False):
        self.calls.append("fit")
        loci = [(l.chr, l.pos) for l in qtl]
        full = self.model_lod(loci, formula)
        drop = None
        if dropone:
            rows = {}
            for term in formula.qtl_terms:
                if term.kind == "qtl":
                    reduced = formula.without_term(term)
                    for pair in formula.interactions:
                        if term.loci[0] in pair:
                            reduced = reduced.without_term(Term.interaction(*pair))
                else:
                    reduced = formula.without_term(term)
                rows[term.name] = full - self.model_lod(loci, reduced)
            drop = pd.DataFrame.from_dict(rows, orient="index", columns=list(pheno_cols))
        return FitResult(full, pheno_cols, drop=drop)

    def refine(self, qtl, formula, pheno_cols, covar, policy=None):
        self.calls.append("refine")
        positions = [self.moves.get((l.chr, l.pos), l.pos) for l in qtl]
        return qtl.with_positions(positions)


@pytest.fixture
def log_records():
    """Collect records emitted on the package logger (which does not propagate)."""
    records = []

    class _Collect(logging.Handler):
        def emit(self, record):
            records.append(record)

    handler = _Collect(level=logging.DEBUG)
    logger.addHandler(handler)
    yield records
    logger.removeHandler(handler)


def warnings_of(records):
    return [r.getMessage() for r in records if r.levelno == logging.WARNING]
