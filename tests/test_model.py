import math

import pytest

from fvqtl.model import BestSoFar, Formula, Locus, ModelState, QTLSet, ScoreRecord, Term, TraceRecorder


def test_formula_parse_and_display():
    f = Formula.parse("y ~ sex + Q2 + Q1 + Q1:Q2")
    assert f.covariates == ["sex"]
    assert f.mains == [1, 2]
    assert f.interactions == [(1, 2)]
    assert str(f) == "y ~ sex + Q1 + Q2 + Q1:Q2"


def test_formula_parse_star_expands():
    f = Formula.parse("Q1*Q3")
    assert set(f.terms) == {Term.main(1), Term.main(3), Term.interaction(1, 3)}


def test_formula_parse_rejects_covariate_interactions():
    with pytest.raises(ValueError):
        Formula.parse("y ~ Q1 + sex:Q1")
    with pytest.raises(ValueError):
        Formula.parse("  ")


def test_interaction_indices_are_ordered():
    assert Term.interaction(3, 1) == Term.interaction(1, 3)
    assert Term.interaction(3, 1).name == "Q1:Q3"
    with pytest.raises(ValueError):
        Term.interaction(2, 2)


def test_drop_qtl_renumbers_densely():
    f = Formula.parse("y ~ Q1 + Q2 + Q3 + Q4 + Q1:Q3 + Q2:Q4 + Q3:Q4")
    dropped = f.drop_qtl(2, 4)
    assert str(dropped) == "y ~ Q1 + Q2 + Q3 + Q1:Q2 + Q2:Q3"
    assert dropped.referenced_qtl() == [1, 2, 3]
    assert dropped.is_consistent(3)


def test_renumber_is_a_pure_mapping():
    f = Formula.parse("y ~ Q1 + Q2 + Q3 + Q1:Q2")
    # a permutation that would collide if applied one index at a time
    g = f.renumber({1: 2, 2: 3, 3: 1})
    assert str(g) == "y ~ Q1 + Q2 + Q3 + Q2:Q3"


def test_count_terms_light_then_heavy_per_group():
    assert Formula.parse("y ~ Q1 + Q2").count_terms() == (2, 0, 0)
    assert Formula.parse("y ~ Q1 + Q2 + Q1:Q2").count_terms() == (2, 0, 1)
    assert Formula.parse("y ~ Q1 + Q2 + Q3 + Q1:Q2 + Q2:Q3").count_terms() == (3, 1, 1)
    assert Formula.parse("y ~ Q1 + Q2 + Q3 + Q4 + Q1:Q2 + Q3:Q4").count_terms() == (4, 0, 2)
    assert Formula.parse("y ~ sex + Q1").count_terms() == (1, 0, 0)


def test_missing_mains_detected():
    f = Formula.parse("y ~ Q1 + Q1:Q2")
    assert f.missing_mains() == [2]
    assert not f.is_consistent(2)


def test_qtlset_names_and_drop():
    qtl = QTLSet.from_lists(["1", "2", "3"], [10, 20, 30])
    assert qtl.names == ["Q1", "Q2", "Q3"]
    smaller = qtl.drop(2)
    assert smaller.names == ["Q1", "Q2"]
    assert smaller.chrs == ["1", "3"]
    assert qtl.n_qtl == 3
    with pytest.raises(IndexError):
        qtl.drop(4)


def test_genome_order():
    qtl = QTLSet([Locus("X", 5.0), Locus("2", 50.0), Locus("2", 10.0)])
    order = qtl.genome_order(["1", "2", "X"])
    assert order == [2, 1, 0]
    assert qtl.reorder(order).positions == [10.0, 50.0, 5.0]
    with pytest.raises(ValueError):
        qtl.genome_order(["1", "2"])


def test_score_record_recomputes_from_formula():
    f = Formula.parse("y ~ Q1 + Q2 + Q1:Q2")
    score = ScoreRecord.compute(9.0, f, (2.0, 3.0, 1.0))
    assert score.counts == (2, 0, 1)
    assert score.plod == 4.0
    assert ScoreRecord.compute(9.0, f, (2.0, math.inf, math.inf)).plod == -math.inf


def _state(plod, n=1):
    qtl = QTLSet([Locus("1", float(10 * i)) for i in range(n)])
    return ModelState(qtl, Formula.additive(n), ScoreRecord(plod, plod, (n, 0, 0)))


def test_best_so_far_requires_strict_positive_improvement():
    best = BestSoFar()
    assert not best.offer(_state(0.0))
    assert best.state is None
    assert best.offer(_state(1.5))
    assert not best.offer(_state(1.5, n=2))
    assert best.state.n_qtl == 1
    assert best.offer(_state(2.0, n=2))
    assert best.plod == 2.0


def test_trace_recorder():
    trace = TraceRecorder()
    trace.record(0, _state(1.0))
    trace.record(1, _state(2.0, n=2))
    frame = trace.to_frame()
    assert frame["step"].tolist() == [0, 1]
    assert frame["n_qtl"].tolist() == [1, 2]
    assert frame["formula"].tolist() == ["y ~ Q1", "y ~ Q1 + Q2"]
    with pytest.raises(ValueError):
        trace.record(1, _state(3.0))


def test_disabled_trace_records_nothing():
    trace = TraceRecorder(enabled=False)
    trace.record(0, _state(1.0))
    assert len(trace) == 0
