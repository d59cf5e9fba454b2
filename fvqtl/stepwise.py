"""
Forward/backward stepwise search for a multiple-QTL model of a
function-valued trait, scored by penalized LOD (pLOD).

Models are compared through slod (mean LOD over phenotype columns) or mlod
(maximum LOD over phenotype columns). The best model visited at any step is
returned, with its QTL in genome order.
"""
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from fvqtl.adapters import GenomeScanAdapter, ModelFitAdapter, PositionRefinementAdapter
from fvqtl.data import CrossData, DataPreparation
from fvqtl.hk import HaleyKnottEngine
from fvqtl.log import logger
from fvqtl.model import (
    BestSoFar,
    Formula,
    ModelState,
    QTLSet,
    ScoreRecord,
    StepwiseResult,
    Term,
    TraceRecorder,
)
from fvqtl.scoring import ScoreAggregationPolicy, TieBreakSelector, calc_plod, normalize_penalties


class StepwiseSearchError(RuntimeError):
    """A search step could not choose a next model."""

    def __init__(self, phase: str, step: int, message: str):
        self.phase = phase
        self.step = step
        super().__init__(f"{phase} step {step}: {message}")


@dataclass
class StepwiseSettings:
    pheno_cols: List[str]
    penalties: Sequence[float]
    usec: str = "slod"
    max_qtl: int = 10
    refine_locations: bool = True
    # False re-activates the interaction searches; stepwiseqtl_f always passes True
    additive_only: bool = True
    keeptrace: bool = False
    seed: Optional[int] = None


class StepwiseSearch:
    """
    Drive the search: initial model, forward selection up to ``max_qtl`` QTL,
    backward elimination down to one QTL, then return the best model seen.

    :param scanner: genome scans (single locus, two locus, additional locus)
    :param fitter: model fits with drop-one statistics
    :param refiner: position refinement
    :param settings: run parameters
    :param covar: additive covariates, passed through to the collaborators
    :param chr_order: chromosome names in genome order (required), used to order the final model
    """

    def __init__(self, scanner: GenomeScanAdapter, fitter: ModelFitAdapter, refiner: PositionRefinementAdapter,
                 settings: StepwiseSettings, covar: Optional[pd.DataFrame] = None,
                 chr_order: Optional[Sequence[str]] = None):
        if not settings.pheno_cols:
            raise ValueError("At least one phenotype column is required.")
        if settings.max_qtl < 1:
            raise ValueError("Need max_qtl > 0 if we are to scan for qtl")
        if not chr_order:
            raise ValueError("chr_order must list the chromosomes in genome order.")
        self.scanner = scanner
        self.fitter = fitter
        self.refiner = refiner
        self.settings = settings
        self.pheno_cols = list(settings.pheno_cols)
        self.policy = ScoreAggregationPolicy.from_name(settings.usec)
        self.penalties = normalize_penalties(settings.penalties, settings.additive_only)
        self.covar = covar
        self.covar_names = [] if covar is None else [str(c) for c in covar.columns]
        self.chr_order = [str(c) for c in chr_order]
        self.tiebreak = TieBreakSelector(settings.seed)
        self.best = BestSoFar()
        self.trace = TraceRecorder(settings.keeptrace)

    # ------------------------
    # scoring helpers
    # ------------------------

    def _score(self, qtl: QTLSet, formula: Formula, phase: str, step: int) -> ScoreRecord:
        fit = self.fitter.fit(qtl, formula, self.pheno_cols, self.covar)
        lod = self.policy.aggregate(fit.lod)
        if np.isnan(lod):
            raise StepwiseSearchError(phase, step, f"model fit returned no finite LOD for {formula}.")
        return ScoreRecord.compute(lod, formula, self.penalties)

    def _select_max(self, scores, phase: str, step: int, what: str) -> int:
        wh = self.tiebreak.select_max(scores)
        if wh is None:
            raise StepwiseSearchError(phase, step, f"{what} returned no finite LOD score.")
        return wh

    def _refine(self, state: ModelState, phase: str, step: int) -> ModelState:
        if not self.settings.refine_locations:
            return state
        logger.info(" ---Refining positions")
        rqtl = self.refiner.refine(state.qtl, state.formula, self.pheno_cols, self.covar, self.policy)
        if rqtl.positions == state.qtl.positions:
            return state
        logger.info(" ---  Moved a bit")
        return ModelState(rqtl, state.formula, self._score(rqtl, state.formula, phase, step))

    def _visit(self, step: int, state: ModelState):
        logger.info(f"    no.qtl = {state.n_qtl}  pLOD = {state.plod}  formula: {state.formula}")
        logger.debug("         qtl: " + " ".join(str(locus) for locus in state.qtl))
        previous = self.best.plod
        if self.best.offer(state):
            logger.info(f"** new best ** (pLOD increased by {round(state.plod - previous, 4)})")
        self.trace.record(step, state)

    # ------------------------
    # phases
    # ------------------------

    def _start_from(self, qtl: QTLSet, formula: Optional[Formula]) -> ModelState:
        logger.info(f" ---Starting at a model with {qtl.n_qtl} QTL")
        if formula is None:
            formula = Formula.additive(qtl.n_qtl, self.covar_names)
        if not formula.is_consistent(qtl.n_qtl):
            raise ValueError(f"Formula {formula} is inconsistent with a model of {qtl.n_qtl} QTL.")
        if self.settings.refine_locations:
            logger.info(" ---Refining positions")
            rqtl = self.refiner.refine(qtl, formula, self.pheno_cols, self.covar, self.policy)
            if rqtl.positions != qtl.positions:
                logger.info(" ---  Moved a bit")
            qtl = rqtl
        return ModelState(qtl, formula, self._score(qtl, formula, "init", 0))

    def _start_at_null(self) -> ModelState:
        if self.settings.additive_only or self.settings.max_qtl == 1:
            out = self.scanner.scan_single_locus(self.pheno_cols, self.covar)
            agg = out.aggregated(self.policy)
            wh = self._select_max(agg, "init", 0, "single-QTL genome scan")
            formula = Formula.additive(1, self.covar_names)
            return ModelState(QTLSet([out.locus(wh)]), formula,
                              ScoreRecord.compute(agg[wh], formula, self.penalties))
        return self._start_two_locus()

    def _start_two_locus(self) -> ModelState:
        """
        Choose between the best single QTL, the best additive pair and the best
        interacting pair by pLOD, with term counts (1,0,0), (2,0,0) and (2,0,1).
        """
        two = self.scanner.scan_two_locus(self.pheno_cols, self.covar)
        one = np.atleast_1d(self.policy.aggregate(two.one))
        iu = two.pair_indices()
        add = np.atleast_1d(self.policy.aggregate(two.add[iu])) if len(iu[0]) else np.array([])
        full = np.atleast_1d(self.policy.aggregate(two.full[iu])) if len(iu[0]) else np.array([])

        def best_of(values):
            finite = values[~np.isnan(values)] if len(values) else values
            return float(finite.max()) if len(finite) else np.nan

        lod1, loda, lodf = best_of(one), best_of(add), best_of(full)
        if np.isnan(lod1):
            raise StepwiseSearchError("init", 0, "two-QTL genome scan returned no finite single-QTL LOD.")
        plod1 = calc_plod(lod1, (1, 0, 0), self.penalties)
        ploda = calc_plod(loda, (2, 0, 0), self.penalties) if not np.isnan(loda) else -np.inf
        plodf = calc_plod(lodf, (2, 0, 1), self.penalties) if not np.isnan(lodf) else -np.inf

        if plod1 > ploda and plod1 > plodf:
            wh = self._select_max(one, "init", 0, "two-QTL genome scan")
            formula = Formula.additive(1, self.covar_names)
            return ModelState(QTLSet([two.locus(wh)]), formula, ScoreRecord.compute(lod1, formula, self.penalties))
        if ploda > plodf:
            values, lod = add, loda
            formula = Formula.additive(2, self.covar_names)
        else:
            values, lod = full, lodf
            formula = Formula.additive(2, self.covar_names).with_terms(Term.interaction(1, 2))
        k = self._select_max(values, "init", 0, "two-QTL genome scan")
        qtl = QTLSet([two.locus(iu[0][k]), two.locus(iu[1][k])])
        return ModelState(qtl, formula, ScoreRecord.compute(lod, formula, self.penalties))

    def _forward(self, state: ModelState, step: int) -> ModelState:
        n = state.n_qtl
        new = n + 1
        logger.info(" ---Scanning for additive qtl")
        out = self.scanner.scan_add_locus(state.qtl, state.formula, self.pheno_cols, self.covar)
        agg = out.aggregated(self.policy)
        wh = self._select_max(agg, "forward", step, "additive QTL scan")
        cand_qtl = state.qtl.add(out.locus(wh))
        cand_formula = state.formula.with_terms(Term.main(new))
        cand = ModelState(cand_qtl, cand_formula, self._score(cand_qtl, cand_formula, "forward", step))
        logger.info(f"        plod = {cand.plod}")

        if not self.settings.additive_only:
            for j in range(1, n + 1):
                logger.info(f" ---Scanning for QTL interacting with Q{j}")
                out = self.scanner.scan_add_locus(state.qtl, state.formula, self.pheno_cols, self.covar,
                                                  interacting_with=j)
                agg = out.aggregated(self.policy)
                wh = self._select_max(agg, "forward", step, f"scan for QTL interacting with Q{j}")
                this_formula = state.formula.with_terms(Term.main(new), Term.interaction(j, new))
                this = ModelState(state.qtl.add(out.locus(wh)), this_formula,
                                  ScoreRecord.compute(agg[wh] + state.lod, this_formula, self.penalties))
                logger.info(f"        plod = {this.plod}")
                if this.plod > cand.plod:
                    cand = this
            if n > 1:
                this = self._add_interaction(state, step)
                if this is not None and this.plod > cand.plod:
                    cand = this
        return cand

    def _add_interaction(self, state: ModelState, step: int) -> Optional[ModelState]:
        """Best new interaction among the QTL already in the model, or None if all are present."""
        present = set(state.formula.interactions)
        candidates = [Term.interaction(i, j)
                      for i in range(1, state.n_qtl + 1) for j in range(i + 1, state.n_qtl + 1)
                      if (i, j) not in present]
        if not candidates:
            return None
        logger.info(" ---Look for additional interactions")
        base = self.fitter.fit(state.qtl, state.formula, self.pheno_cols, self.covar).lod
        gains = np.vstack([
            self.fitter.fit(state.qtl, state.formula.with_terms(term), self.pheno_cols, self.covar).lod - base
            for term in candidates
        ])
        agg = np.atleast_1d(self.policy.aggregate(gains))
        wh = self._select_max(agg, "forward", step, "search for additional interactions")
        formula = state.formula.with_terms(candidates[wh])
        this = ModelState(state.qtl, formula, ScoreRecord.compute(agg[wh] + state.lod, formula, self.penalties))
        logger.info(f"        plod = {this.plod}")
        return this

    def _backward(self, state: ModelState, step: int) -> ModelState:
        terms = state.formula.qtl_terms
        fit = self.fitter.fit(state.qtl, state.formula, self.pheno_cols, self.covar, dropone=True)
        names = [t.name for t in terms]
        if fit.drop is None or any(name not in fit.drop.index for name in names):
            raise StepwiseSearchError("backward", step,
                                      f"drop-one results do not cover the terms of {state.formula}.")
        lodbyphe = fit.drop.loc[names, self.pheno_cols].to_numpy(dtype=float)
        thelod = np.atleast_1d(self.policy.aggregate(lodbyphe))
        wh = self.tiebreak.select_min(thelod)
        if wh is None:
            raise StepwiseSearchError("backward", step, "drop-one fit returned no finite LOD score.")
        todrop = terms[wh]
        logger.info(f" ---Dropping {todrop.name}")
        if todrop.kind == "int":
            if todrop not in state.formula.terms:
                raise StepwiseSearchError("backward", step, f"Confusion about what interaction to drop: {todrop.name}")
            qtl, formula = state.qtl, state.formula.without_term(todrop)
        else:
            i = todrop.loci[0]
            formula = state.formula.drop_qtl(i, state.n_qtl)
            qtl = state.qtl.drop(i)
        return ModelState(qtl, formula, self._score(qtl, formula, "backward", step))

    def _finalize(self) -> StepwiseResult:
        best = self.best.state
        trace = list(self.trace.entries) if self.settings.keeptrace else None
        table = self.trace.to_frame() if self.settings.keeptrace else None
        if best is None:
            return StepwiseResult(QTLSet(), Formula.additive(0, self.covar_names), plod=0.0, lod=0.0,
                                  trace=trace, trace_table=table)
        order = best.qtl.genome_order(self.chr_order)
        mapping = {old + 1: new + 1 for new, old in enumerate(order)}
        return StepwiseResult(best.qtl.reorder(order), best.formula.renumber(mapping), plod=best.plod,
                              lod=best.lod, trace=trace, trace_table=table)

    # ------------------------
    # driver
    # ------------------------

    def run(self, qtl: Optional[QTLSet] = None, formula: Optional[Formula] = None) -> StepwiseResult:
        self.best = BestSoFar()
        self.trace = TraceRecorder(self.settings.keeptrace)

        logger.info(" -Initial scan")
        if qtl is not None and qtl.n_qtl > 0:
            missing = sorted({c for c in qtl.chrs if c not in self.chr_order})
            if missing:
                raise ValueError(f"Chromosome(s) {missing} (in QTL object) not in genome description.")
            state = self._start_from(qtl, formula)
        else:
            state = self._start_at_null()
        self._visit(0, state)

        step = 0
        while state.n_qtl < self.settings.max_qtl:
            step += 1
            logger.info(f" -Step {step}")
            state = self._forward(state, step)
            state = self._refine(state, "forward", step)
            self._visit(step, state)

        if state.n_qtl > 1:
            logger.info(" -Starting backward deletion")
        while state.n_qtl > 1:
            step += 1
            logger.info(f" -Step {step}")
            state = self._backward(state, step)
            state = self._refine(state, "backward", step)
            self._visit(step, state)

        return self._finalize()


def stepwiseqtl_f(cross: CrossData, pheno_cols=None, qtl: Optional[QTLSet] = None, formula=None,
                  usec: str = "slod", max_qtl: int = 10, covar=None, method: str = "hk",
                  refine_locations: bool = True, additive_only: bool = True, penalties=None,
                  keeptrace: bool = False, seed: Optional[int] = None, chr=None,
                  n_jobs: int = 1) -> StepwiseResult:
    """
    Stepwise selection of a multiple-QTL model for a function-valued trait.

    :param cross: cross data with genotype probabilities and/or imputations
    :param pheno_cols: phenotype columns (0-based positions or names); default all
    :param qtl: optional starting QTLSet
    :param formula: optional starting formula (string or Formula); ignored without ``qtl``
    :param usec: "slod" (mean LOD across columns) or "mlod" (max LOD across columns)
    :param max_qtl: maximum number of QTL reached by forward selection
    :param covar: additive covariates (DataFrame or array-like, one row per individual)
    :param method: "hk" (Haley-Knott regression) or "imp" (multiple imputation)
    :param refine_locations: refine QTL positions after each step
    :param additive_only: only additive models are supported; False is downgraded with a warning
    :param penalties: penalties on main effects and heavy/light interactions (1 to 3 values)
    :param keeptrace: keep the model visited at each step
    :param seed: seed for random tie-breaking
    :param chr: optional chromosome subset; names prefixed with '-' are excluded
    :param n_jobs: worker threads for evaluating candidate positions
    :return: StepwiseResult with the best model in genome order
    """
    policy = ScoreAggregationPolicy.from_name(usec)
    if not additive_only:
        logger.warning("Only additive models are supported; using additive_only=True.")
        additive_only = True
    if max_qtl < 1:
        raise ValueError("Need max_qtl > 0 if we are to scan for qtl")
    penalties = normalize_penalties(penalties, additive_only)

    prepared = DataPreparation().prepare(cross, pheno_cols=pheno_cols, covar=covar, qtl=qtl, formula=formula,
                                         method=method, chr=chr)
    engine = HaleyKnottEngine(prepared.cross, method=prepared.method, n_jobs=n_jobs)
    settings = StepwiseSettings(
        pheno_cols=prepared.pheno_cols,
        penalties=penalties,
        usec=policy.name,
        max_qtl=max_qtl,
        refine_locations=refine_locations,
        additive_only=additive_only,
        keeptrace=keeptrace,
        seed=seed,
    )
    search = StepwiseSearch(engine, engine, engine, settings, covar=prepared.covar,
                            chr_order=prepared.cross.chrnames)
    result = search.run(prepared.qtl, prepared.formula)
    logger.info(f"Best model: {result.formula_str}  pLOD = {result.plod}")
    return result


def scanone_f(cross: CrossData, pheno_cols=None, usec: str = "slod", covar=None, method: str = "hk",
              chr=None, n_jobs: int = 1) -> pd.DataFrame:
    """
    Single-QTL genome scan with per-column LOD and the aggregated slod/mlod column.
    """
    policy = ScoreAggregationPolicy.from_name(usec)
    prepared = DataPreparation().prepare(cross, pheno_cols=pheno_cols, covar=covar, method=method, chr=chr)
    engine = HaleyKnottEngine(prepared.cross, method=prepared.method, n_jobs=n_jobs)
    out = engine.scan_single_locus(prepared.pheno_cols, prepared.covar)
    return out.with_aggregate(policy)
