import numpy as np
import pandas as pd
import pytest

from conftest import simulate_backcross
from fvqtl.hk import HaleyKnottEngine
from fvqtl.model import Formula, QTLSet
from fvqtl.scoring import ScoreAggregationPolicy

COLS = ["t1", "t2", "t3"]
SLOD = ScoreAggregationPolicy("slod")


def test_single_locus_scan_peaks_at_true_qtl(cross):
    out = HaleyKnottEngine(cross).scan_single_locus(COLS, None)
    assert len(out) == 20
    assert out.lod_columns == COLS
    peak = out.locus(int(np.argmax(out.aggregated(SLOD))))
    assert (peak.chr, peak.pos) == ("1", 40.0)
    # larger effects give larger LOD
    row = out.lod[4]
    assert row[0] < row[1] < row[2]


def test_fit_matches_scan(cross):
    engine = HaleyKnottEngine(cross)
    scan = engine.scan_single_locus(COLS, None)
    fit = engine.fit(QTLSet([("1", 40.0)]), Formula.additive(1), COLS, None)
    np.testing.assert_allclose(fit.lod, scan.lod[4])


def test_drop_one_of_single_qtl_is_full_lod(cross):
    fit = HaleyKnottEngine(cross).fit(QTLSet([("1", 40.0)]), Formula.additive(1), COLS, None, dropone=True)
    assert list(fit.drop.index) == ["Q1"]
    np.testing.assert_allclose(fit.drop.loc["Q1"].to_numpy(), fit.lod)


def test_drop_one_of_main_effect_removes_its_interactions(cross):
    engine = HaleyKnottEngine(cross)
    qtl = QTLSet([("1", 40.0), ("2", 50.0)])
    full = Formula.parse("y ~ Q1 + Q2 + Q1:Q2")
    fit = engine.fit(qtl, full, COLS, None, dropone=True)
    assert list(fit.drop.index) == ["Q1", "Q2", "Q1:Q2"]
    reduced = engine.fit(QTLSet([("1", 40.0), ("2", 50.0)]), Formula.parse("y ~ Q2"), COLS, None)
    np.testing.assert_allclose(fit.drop.loc["Q1"].to_numpy(), fit.lod - reduced.lod)


def test_additional_locus_scan_is_incremental(cross):
    engine = HaleyKnottEngine(cross)
    qtl = QTLSet([("1", 40.0)])
    out = engine.scan_add_locus(qtl, Formula.additive(1), COLS, None)
    base = engine.fit(qtl, Formula.additive(1), COLS, None).lod
    two = engine.fit(qtl.add(out.locus(15)), Formula.additive(2), COLS, None).lod
    np.testing.assert_allclose(out.lod[15], two - base, atol=1e-10)
    # adding the locus already in the model explains nothing new
    np.testing.assert_allclose(out.lod[4], 0.0, atol=1e-8)


def test_interacting_scan_contains_the_interaction(cross):
    engine = HaleyKnottEngine(cross)
    qtl = QTLSet([("1", 40.0)])
    plain = engine.scan_add_locus(qtl, Formula.additive(1), COLS, None)
    inter = engine.scan_add_locus(qtl, Formula.additive(1), COLS, None, interacting_with=1)
    assert np.all(inter.lod[10:] >= plain.lod[10:] - 1e-10)
    with pytest.raises(ValueError):
        engine.scan_add_locus(qtl, Formula.additive(1), COLS, None, interacting_with=2)


def test_two_locus_scan_fills_upper_triangle(cross):
    two = HaleyKnottEngine(cross).scan_two_locus(["t1"], None)
    m = 20
    assert two.add.shape == (m, m, 1)
    assert np.isnan(two.add[5, 2]).all()
    i, j = two.pair_indices()
    assert len(i) == m * (m - 1) // 2
    assert np.all(two.full[i, j] >= two.add[i, j] - 1e-10)
    assert np.all(two.add[4, 5:] >= two.one[4] - 1e-10)


def test_refine_moves_qtl_to_peak(cross):
    engine = HaleyKnottEngine(cross)
    refined = engine.refine(QTLSet([("1", 20.0)]), Formula.additive(1), COLS, None, SLOD)
    assert refined.positions == [40.0]


def test_refine_keeps_qtl_between_neighbours(cross):
    engine = HaleyKnottEngine(cross)
    qtl = QTLSet([("1", 10.0), ("1", 30.0), ("1", 80.0)])
    refined = engine.refine(qtl, Formula.additive(3), COLS, None, SLOD)
    assert refined.positions == sorted(refined.positions)
    assert 40.0 in refined.positions


def test_refine_keeps_off_grid_position_when_unmoved(cross):
    engine = HaleyKnottEngine(cross)
    refined = engine.refine(QTLSet([("1", 41.0)]), Formula.additive(1), COLS, None, SLOD)
    assert refined.positions == [41.0]


def test_covariate_absorbs_qtl(cross):
    covar = pd.DataFrame({"g": cross.geno["1"].prob[:, 4, 1]})
    out = HaleyKnottEngine(cross).scan_single_locus(COLS, covar)
    np.testing.assert_allclose(out.lod[4], 0.0, atol=1e-8)


def test_imputation_matches_hk_for_known_genotypes(cross):
    hk = HaleyKnottEngine(cross, method="hk").scan_single_locus(COLS, None)
    imp = HaleyKnottEngine(cross, method="imp").scan_single_locus(COLS, None)
    np.testing.assert_allclose(imp.lod, hk.lod, atol=1e-8)


def test_imputations_combine_on_likelihood_scale(cross):
    engine = HaleyKnottEngine(cross, method="imp")
    combined = engine._combine(np.array([[0.0, 2.0], [1.0, 2.0]]))
    np.testing.assert_allclose(combined, [np.log10(5.5), 2.0])


def test_threads_give_identical_results(cross):
    one = HaleyKnottEngine(cross, n_jobs=1).scan_single_locus(COLS, None)
    two = HaleyKnottEngine(cross, n_jobs=2).scan_single_locus(COLS, None)
    pd.testing.assert_frame_equal(one.frame, two.frame)


def test_engine_requires_matching_genotypes():
    no_draws = simulate_backcross(n_ind=30, with_draws=False)
    with pytest.raises(ValueError):
        HaleyKnottEngine(no_draws, method="imp")
    with pytest.raises(ValueError):
        HaleyKnottEngine(no_draws, method="ml")


def test_formula_beyond_model_rejected(cross):
    with pytest.raises(ValueError):
        HaleyKnottEngine(cross).fit(QTLSet([("1", 40.0)]), Formula.additive(2), COLS, None)
