import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from fvqtl.log import logger
from fvqtl.model import Formula, QTLSet, Term


# ------------------------
# Table helpers
# ------------------------

def _infer_sep_from_ext(path: str) -> str:
    lower = (path or "").lower()
    if lower.endswith(".csv"):
        return ","
    # default treat .tsv/.txt as tab
    return "\t"


def _normalize_sep(sep: Optional[str], path: Optional[str]) -> str:
    if sep in (None, "auto"):
        return _infer_sep_from_ext(path or "")
    if sep.lower() in {"csv", ","}:
        return ","
    if sep.lower() in {"tsv", "tab", "\t"}:
        return "\t"
    # allow custom single-char
    return sep


def read_table(path: str, sep: Optional[str] = None, encoding: str = "utf-8") -> pd.DataFrame:
    if not os.path.isfile(path):
        raise ValueError(f"Input not found: {path}")
    use_sep = _normalize_sep(sep, path)
    try:
        df = pd.read_csv(path, sep=use_sep, header=0, encoding=encoding)
    except Exception as e:
        raise ValueError(f"Failed to read table: {path} ({e})")
    return df


# ------------------------
# Cross data
# ------------------------

class ChromosomeGeno:
    """
    Genotype information on one chromosome at a grid of positions (cM).

    :param prob: genotype probabilities, shape (n_ind, n_pos, n_gen)
    :param draws: imputed genotypes coded 0..n_gen-1, shape (n_ind, n_pos, n_draws)
    """

    def __init__(self, name: str, positions, prob=None, draws=None, n_gen: Optional[int] = None):
        self.name = str(name)
        self.positions = np.asarray(positions, dtype=float)
        if self.positions.ndim != 1 or len(self.positions) == 0:
            raise ValueError(f"Chromosome {self.name} needs at least one position.")
        if np.any(np.diff(self.positions) < 0):
            raise ValueError(f"Positions on chromosome {self.name} must be sorted.")
        self.prob = None if prob is None else np.asarray(prob, dtype=float)
        self.draws = None if draws is None else np.asarray(draws, dtype=int)
        if self.prob is None and self.draws is None:
            raise ValueError(f"Chromosome {self.name} has neither genotype probabilities nor imputations.")
        for label, arr in (("prob", self.prob), ("draws", self.draws)):
            if arr is not None and (arr.ndim != 3 or arr.shape[1] != len(self.positions)):
                raise ValueError(
                    f"{label} on chromosome {self.name} must have shape (n_ind, {len(self.positions)}, k), got {arr.shape}."
                )
        if n_gen is None:
            n_gen = self.prob.shape[2] if self.prob is not None else int(self.draws.max()) + 1
        self.n_gen = int(n_gen)

    @property
    def n_ind(self) -> int:
        arr = self.prob if self.prob is not None else self.draws
        return arr.shape[0]

    def nearest(self, pos: float) -> int:
        """Index of the grid position closest to ``pos`` (first one on ties)."""
        return int(np.argmin(np.abs(self.positions - float(pos))))

    def subset_ind(self, keep: np.ndarray) -> "ChromosomeGeno":
        return ChromosomeGeno(
            self.name,
            self.positions,
            prob=None if self.prob is None else self.prob[keep],
            draws=None if self.draws is None else self.draws[keep],
            n_gen=self.n_gen,
        )


class CrossData:
    """
    Genome description, genotype probabilities/imputations and phenotypes of
    one experimental cross. Chromosome order of ``geno`` is the genome order.
    """

    def __init__(self, geno: Dict[str, ChromosomeGeno], pheno: pd.DataFrame, samples: Optional[Sequence] = None):
        if not geno:
            raise ValueError("Cross contains no chromosomes.")
        self.geno: Dict[str, ChromosomeGeno] = {str(k): v for k, v in geno.items()}
        self.pheno = pheno.reset_index(drop=True)
        self.pheno.columns = [str(c) for c in self.pheno.columns]
        if samples is None:
            samples = [str(i) for i in range(1, len(self.pheno) + 1)]
        self.samples: List[str] = [str(s) for s in samples]
        if len(self.samples) != len(self.pheno):
            raise ValueError(f"{len(self.samples)} sample IDs given for {len(self.pheno)} phenotype rows.")
        for chrom in self.geno.values():
            if chrom.n_ind != len(self.pheno):
                raise ValueError(
                    f"Chromosome {chrom.name} has {chrom.n_ind} individuals, phenotypes have {len(self.pheno)}."
                )

    @property
    def chrnames(self) -> List[str]:
        return list(self.geno)

    @property
    def n_ind(self) -> int:
        return len(self.pheno)

    @property
    def nphe(self) -> int:
        return self.pheno.shape[1]

    @property
    def has_prob(self) -> bool:
        return all(c.prob is not None for c in self.geno.values())

    @property
    def has_draws(self) -> bool:
        return all(c.draws is not None for c in self.geno.values())

    @property
    def n_draws(self) -> Optional[int]:
        if not self.has_draws:
            return None
        return next(iter(self.geno.values())).draws.shape[2]

    def grid(self) -> pd.DataFrame:
        """All candidate positions in genome order (columns chr, pos)."""
        frames = [pd.DataFrame({"chr": name, "pos": c.positions}) for name, c in self.geno.items()]
        return pd.concat(frames, ignore_index=True)

    def subset_chr(self, chr_spec) -> "CrossData":
        """
        Keep a subset of chromosomes. Names prefixed with '-' are excluded instead;
        a boolean vector selects by genome order.
        """
        if chr_spec is None:
            return self
        if isinstance(chr_spec, str) or np.isscalar(chr_spec):
            chr_spec = [chr_spec]
        chr_spec = list(chr_spec)
        if chr_spec and all(isinstance(c, (bool, np.bool_)) for c in chr_spec):
            if len(chr_spec) != len(self.geno):
                raise ValueError("Logical chr selection must have one value per chromosome.")
            keep = [name for name, flag in zip(self.geno, chr_spec) if flag]
        else:
            names = [str(c) for c in chr_spec]
            if all(n.startswith("-") for n in names):
                drop = {n[1:] for n in names}
                unknown = drop - set(self.geno)
                keep = [name for name in self.geno if name not in drop]
            else:
                if any(n.startswith("-") for n in names):
                    raise ValueError("chr cannot mix included and excluded chromosomes.")
                unknown = set(names) - set(self.geno)
                keep = [name for name in self.geno if name in set(names)]
            if unknown:
                raise ValueError(f"Chromosome(s) {sorted(unknown)} not found in cross.")
        if not keep:
            raise ValueError("No chromosomes left after applying chr selection.")
        return CrossData({name: self.geno[name] for name in keep}, self.pheno, self.samples)

    def subset_ind(self, keep) -> "CrossData":
        keep = np.asarray(keep, dtype=bool)
        return CrossData(
            {name: c.subset_ind(keep) for name, c in self.geno.items()},
            self.pheno.loc[keep].reset_index(drop=True),
            [s for s, k in zip(self.samples, keep) if k],
        )

    def make_qtl(self, chrs: Sequence, positions: Sequence[float], what: str = "prob") -> QTLSet:
        """Build a QTLSet at the nearest grid positions, tagged with this cross's dimensions."""
        if what not in ("prob", "draws"):
            raise ValueError("what must be 'prob' or 'draws'.")
        chrs = [str(c) for c in chrs]
        missing = [c for c in chrs if c not in self.geno]
        if missing:
            raise ValueError(f"Chromosome(s) {missing} (in QTL object) not in cross object.")
        snapped = []
        for c, p in zip(chrs, positions):
            grid = self.geno[c].positions
            snapped.append(float(grid[self.geno[c].nearest(p)]))
        return QTLSet.from_lists(
            chrs, snapped, n_ind=self.n_ind, what=what,
            n_draws=self.n_draws if what == "draws" else None,
        )

    @classmethod
    def from_tables(cls, genoprob: pd.DataFrame, pheno: pd.DataFrame,
                    draws: Optional[pd.DataFrame] = None, sample_col: Optional[str] = None) -> "CrossData":
        """
        Build a cross from long-format tables.

        :param genoprob: columns chr, pos, sample, then one probability column per genotype
        :param pheno: sample column (``sample_col`` or the first column) plus trait columns
        :param draws: columns chr, pos, sample, then one column per imputation holding genotype codes 1..n_gen
        """
        sample_col = sample_col or pheno.columns[0]
        if sample_col not in pheno.columns:
            raise ValueError(f"Sample column '{sample_col}' not found in phenotype table")
        samples = pheno[sample_col].astype(str).tolist()
        if len(set(samples)) != len(samples):
            raise ValueError("Duplicate sample IDs in phenotype table.")
        pheno_values = pheno.drop(columns=[sample_col])
        if pheno_values.shape[1] < 1:
            raise ValueError("Phenotype table must contain at least one trait column after the sample column.")

        prob_arrays = _long_to_arrays(genoprob, samples, "genotype probability") if genoprob is not None else {}
        draw_arrays = _long_to_arrays(draws, samples, "imputation") if draws is not None else {}
        if not prob_arrays and not draw_arrays:
            raise ValueError("Either genotype probabilities or imputations are required.")

        order = list(prob_arrays) or list(draw_arrays)
        geno = {}
        for name in order:
            positions, prob = prob_arrays.get(name, (None, None))
            dpos, dr = draw_arrays.get(name, (None, None))
            if positions is None:
                positions = dpos
            elif dpos is not None and not np.allclose(positions, dpos):
                raise ValueError(f"Imputation positions on chromosome {name} differ from probability positions.")
            n_gen = prob.shape[2] if prob is not None else None
            geno[name] = ChromosomeGeno(
                name, positions, prob=prob,
                draws=None if dr is None else dr.astype(int) - 1,
                n_gen=n_gen,
            )
        logger.info(f"Loaded cross with {len(samples)} individuals, {len(geno)} chromosomes "
                    f"and {pheno_values.shape[1]} phenotype columns.")
        return cls(geno, pheno_values, samples)

    @classmethod
    def read(cls, genoprob_file: Optional[str], pheno_file: str, draws_file: Optional[str] = None,
             sample_col: Optional[str] = None, sep: Optional[str] = None) -> "CrossData":
        logger.info(f"Loading phenotype file: {pheno_file}")
        pheno = read_table(pheno_file, sep=sep)
        genoprob = None
        if genoprob_file:
            logger.info(f"Loading genotype probability file: {genoprob_file}")
            genoprob = read_table(genoprob_file, sep=sep)
        draws = None
        if draws_file:
            logger.info(f"Loading imputation file: {draws_file}")
            draws = read_table(draws_file, sep=sep)
        return cls.from_tables(genoprob, pheno, draws=draws, sample_col=sample_col)


def _long_to_arrays(df: pd.DataFrame, samples: List[str], label: str):
    required = {"chr", "pos", "sample"}
    missing = required - set(df.columns)
    if missing:
        raise ValueError(f"The {label} table is missing required columns: {missing}.")
    value_cols = [c for c in df.columns if c not in required]
    if not value_cols:
        raise ValueError(f"The {label} table has no value columns.")
    df = df.copy()
    df["chr"] = df["chr"].astype(str)
    df["sample"] = df["sample"].astype(str)
    df = df[df["sample"].isin(set(samples))]
    index = pd.Index(samples)
    out = {}
    for chrom, sub in df.groupby("chr", sort=False):
        positions = np.sort(sub["pos"].astype(float).unique())
        pos_idx = np.searchsorted(positions, sub["pos"].astype(float).to_numpy())
        ind_idx = index.get_indexer(sub["sample"])
        arr = np.full((len(samples), len(positions), len(value_cols)), np.nan)
        arr[ind_idx, pos_idx, :] = sub[value_cols].to_numpy(dtype=float)
        if np.isnan(arr).any():
            raise ValueError(f"The {label} table is incomplete on chromosome {chrom} "
                             f"(every sample needs a value at every position).")
        out[str(chrom)] = (positions, arr)
    return out


# ------------------------
# Data preparation
# ------------------------

@dataclass
class PreparedData:
    cross: CrossData
    pheno_cols: List[str]
    covar: Optional[pd.DataFrame]
    method: str
    qtl: Optional[QTLSet] = None
    formula: Optional[Formula] = None

    @property
    def startatnull(self) -> bool:
        return self.qtl is None


class DataPreparation:
    """Validate and reconcile the inputs of a stepwise search before it starts."""

    METHODS = ("hk", "imp")

    def prepare(self, cross: CrossData, pheno_cols=None, covar=None, qtl: Optional[QTLSet] = None,
                formula: Union[str, Formula, None] = None, method: str = "hk", chr=None) -> PreparedData:
        if method not in self.METHODS:
            raise ValueError(f"method must be one of {self.METHODS}, got '{method}'.")
        pheno_names = self.select_pheno_cols(cross, pheno_cols)
        cross = cross.subset_chr(chr)
        covar = self.coerce_covar(covar, cross.n_ind)
        covar_names = [] if covar is None else list(covar.columns)

        if qtl is not None:
            if not isinstance(qtl, QTLSet):
                raise ValueError("The qtl argument must be a QTLSet.")
            missing = sorted({c for c in qtl.chrs if c not in cross.geno})
            if missing:
                raise ValueError(f"Chromosome(s) {', '.join(missing)} (in QTL object) not in cross object.")
            qtl, formula = self.check_start(qtl, formula, covar_names)
        elif formula is not None:
            logger.warning("formula ignored if qtl is not provided.")
            formula = None

        method = self.resolve_method(cross, method)
        if qtl is not None:
            qtl = self.reconcile_qtl(cross, qtl, method)

        cross, covar, qtl = self.drop_missing(cross, pheno_names, covar, qtl)
        self.check_variance(cross, pheno_names)
        return PreparedData(cross, pheno_names, covar, method, qtl, formula)

    def select_pheno_cols(self, cross: CrossData, pheno_cols) -> List[str]:
        columns = list(cross.pheno.columns)
        if pheno_cols is None:
            selected = columns
        else:
            if isinstance(pheno_cols, (str, int, np.integer)):
                pheno_cols = [pheno_cols]
            selected = []
            for col in pheno_cols:
                if isinstance(col, (int, np.integer)) and not isinstance(col, bool):
                    if not 0 <= col < len(columns):
                        raise ValueError(f"pheno_cols should be in a range of 0 to {len(columns) - 1}, got {col}.")
                    selected.append(columns[col])
                elif col in columns:
                    selected.append(col)
                else:
                    raise ValueError(f"Phenotype column '{col}' not found in cross.")
        if not selected:
            raise ValueError("At least one phenotype column must be selected.")
        if len(set(selected)) != len(selected):
            raise ValueError("pheno_cols contains duplicates.")
        non_numeric = [c for c in selected if not pd.api.types.is_numeric_dtype(cross.pheno[c])]
        if non_numeric:
            raise ValueError(f"Phenotype column(s) {non_numeric} are not numeric.")
        return [str(c) for c in selected]

    def coerce_covar(self, covar, n_ind: int) -> Optional[pd.DataFrame]:
        """Make covariates a numeric DataFrame; text columns become indicator columns."""
        if covar is None:
            return None
        if not isinstance(covar, pd.DataFrame):
            arr = np.asarray(covar)
            if arr.ndim == 1:
                arr = arr.reshape(-1, 1)
            covar = pd.DataFrame(arr, columns=[f"covar{i}" for i in range(1, arr.shape[1] + 1)])
        if covar.shape[1] == 0:
            return None
        if len(covar) != n_ind:
            raise ValueError(f"covar has {len(covar)} rows, cross has {n_ind} individuals.")
        covar = covar.reset_index(drop=True)
        covar.columns = [str(c) for c in covar.columns]
        text_cols = [c for c in covar.columns if not pd.api.types.is_numeric_dtype(covar[c])]
        if text_cols:
            na_rows = covar[text_cols].isna().any(axis=1)
            covar = pd.get_dummies(covar, columns=text_cols, drop_first=True, dtype=float)
            covar.loc[na_rows, :] = np.nan
        return covar.astype(float)

    def check_start(self, qtl: QTLSet, formula, covar_names: Sequence[str]):
        """Reconcile a starting QTL set with its formula."""
        if formula is None:
            return qtl, Formula.additive(qtl.n_qtl, covar_names)
        if not isinstance(formula, Formula):
            formula = Formula.parse(formula)
        unknown = sorted(set(formula.covariates) - set(covar_names))
        if unknown:
            raise ValueError(f"Formula references covariate(s) {unknown} not in covar.")
        too_big = [i for i in formula.referenced_qtl() if i > qtl.n_qtl]
        if too_big:
            raise ValueError(f"Formula references QTL {['Q%d' % i for i in too_big]} not in the qtl object "
                             f"({qtl.n_qtl} QTL).")
        missing_mains = formula.missing_mains()
        if missing_mains:
            logger.warning(f"Adding main effects {['Q%d' % i for i in missing_mains]} required by interactions.")
            formula = formula.with_terms(*[Term.main(i) for i in missing_mains])
        unused = [i for i in range(1, qtl.n_qtl + 1) if i not in formula.referenced_qtl()]
        if unused:
            logger.warning(f"Dropping QTL {['Q%d' % i for i in unused]} that are not in the formula.")
            for i in reversed(unused):
                formula = formula.drop_qtl(i, qtl.n_qtl)
                qtl = qtl.drop(i)
        absent = [c for c in covar_names if c not in formula.covariates]
        if absent:
            formula = formula.with_terms(*[Term.covariate(c) for c in absent])
        if qtl.n_qtl == 0:
            raise ValueError("The starting model contains no QTL.")
        return qtl, formula

    def resolve_method(self, cross: CrossData, method: str) -> str:
        if method == "imp":
            if not cross.has_draws:
                if cross.has_prob:
                    logger.warning("The cross doesn't contain imputations; using method=\"hk\".")
                    return "hk"
                raise RuntimeError("You need to first simulate genotype imputations.")
        else:
            if not cross.has_prob:
                if cross.has_draws:
                    logger.warning("The cross doesn't contain QTL genotype probabilities; using method=\"imp\".")
                    return "imp"
                raise RuntimeError("You need to first calculate genotype probabilities.")
        return method

    def reconcile_qtl(self, cross: CrossData, qtl: QTLSet, method: str) -> QTLSet:
        what = "draws" if method == "imp" else "prob"
        if qtl.n_ind is not None and qtl.n_ind != cross.n_ind:
            logger.warning("No. individuals in qtl object doesn't match that in the input cross; re-creating qtl object.")
            return cross.make_qtl(qtl.chrs, qtl.positions, what=what)
        if method == "imp" and qtl.what == "draws" and qtl.n_draws != cross.n_draws:
            logger.warning("No. imputations in qtl object doesn't match that in the input cross; re-creating qtl object.")
            return cross.make_qtl(qtl.chrs, qtl.positions, what="draws")
        if qtl.what is not None and qtl.what != what:
            if method == "imp":
                raise ValueError("The qtl object doesn't contain imputations; rebuild it with what=\"draws\".")
            raise ValueError("The qtl object doesn't contain QTL genotype probabilities; rebuild it with what=\"prob\".")
        return qtl

    def drop_missing(self, cross: CrossData, pheno_names: List[str], covar: Optional[pd.DataFrame],
                     qtl: Optional[QTLSet]):
        phcovar = cross.pheno[pheno_names]
        if covar is not None:
            phcovar = pd.concat([phcovar, covar], axis=1)
        hasmissing = phcovar.isna().any(axis=1).to_numpy()
        if hasmissing.all():
            raise ValueError("All individuals are missing phenotypes or covariates.")
        if hasmissing.any():
            logger.info(f"Dropping {int(hasmissing.sum())} individuals with missing phenotypes or covariates.")
            keep = ~hasmissing
            cross = cross.subset_ind(keep)
            if covar is not None:
                covar = covar.loc[keep].reset_index(drop=True)
            if qtl is not None and qtl.n_ind is not None:
                qtl = QTLSet(qtl.loci, n_ind=cross.n_ind, what=qtl.what, n_draws=qtl.n_draws)
        return cross, covar, qtl

    def check_variance(self, cross: CrossData, pheno_names: List[str]):
        var = cross.pheno[pheno_names].var(ddof=1)
        flat = [c for c in pheno_names if not var[c] > 0]
        if flat:
            raise ValueError(f"There is a phenotype with no variability: {flat}")


def read_covar(path: str, samples: Sequence[str], sample_col: Optional[str] = None,
               sep: Optional[str] = None) -> pd.DataFrame:
    """
    Read a covariate table and align it to ``samples``; samples absent from the
    table get missing values (and are later dropped as missing).
    """
    logger.info(f"Loading covariate file: {path}")
    df = read_table(path, sep=sep)
    sample_col = sample_col or df.columns[0]
    if sample_col not in df.columns:
        raise ValueError(f"Sample column '{sample_col}' not found in covariate table")
    if df.shape[1] < 2:
        raise ValueError("Covariate table must contain at least one covariate column after the sample column.")
    df[sample_col] = df[sample_col].astype(str)
    if df[sample_col].duplicated().any():
        raise ValueError("Duplicate sample IDs in covariate table.")
    aligned = df.set_index(sample_col).reindex([str(s) for s in samples])
    n_missing = int(aligned.isna().all(axis=1).sum())
    if n_missing:
        logger.warning(f"{n_missing} samples have no covariate values.")
    return aligned.reset_index(drop=True)
