import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from fvqtl.scoring import calc_plod


QTL_NAME_RE = re.compile(r"^[Qq]([0-9]+)$")


class UnionFind:
    """Union-Find data structure for grouping QTL joined by interactions."""
    def __init__(self):
        self.parent = {}

    def find(self, x):
        if x not in self.parent:
            self.parent[x] = x
        while self.parent[x] != x:
            self.parent[x] = self.parent[self.parent[x]]  # Path compression
            x = self.parent[x]
        return x

    def union(self, x, y):
        root_x = self.find(x)
        root_y = self.find(y)
        if root_x != root_y:
            self.parent[root_y] = root_x


@dataclass(frozen=True)
class Locus:
    chr: str
    pos: float

    def __str__(self):
        return f"{self.chr}@{self.pos:.1f}"


class QTLSet:
    """
    Ordered QTL positions named Q1..Qn by their order in the set.

    ``n_ind``, ``what`` and ``n_draws`` describe the dataset the set was built
    against ("prob" or "draws"); they are None for sets built from positions only.
    """

    def __init__(self, loci: Iterable = (), n_ind: Optional[int] = None,
                 what: Optional[str] = None, n_draws: Optional[int] = None):
        self.loci: List[Locus] = [
            locus if isinstance(locus, Locus) else Locus(str(locus[0]), float(locus[1]))
            for locus in loci
        ]
        self.n_ind = n_ind
        self.what = what
        self.n_draws = n_draws

    @classmethod
    def from_lists(cls, chrs: Sequence, positions: Sequence[float], **kwargs):
        if len(chrs) != len(positions):
            raise ValueError("chr and pos must have the same length.")
        return cls([Locus(str(c), float(p)) for c, p in zip(chrs, positions)], **kwargs)

    def _derive(self, loci):
        return QTLSet(loci, n_ind=self.n_ind, what=self.what, n_draws=self.n_draws)

    @property
    def n_qtl(self) -> int:
        return len(self.loci)

    @property
    def names(self) -> List[str]:
        return [f"Q{i}" for i in range(1, len(self.loci) + 1)]

    @property
    def chrs(self) -> List[str]:
        return [locus.chr for locus in self.loci]

    @property
    def positions(self) -> List[float]:
        return [locus.pos for locus in self.loci]

    def __len__(self):
        return len(self.loci)

    def __iter__(self):
        return iter(self.loci)

    def __getitem__(self, index):
        return self.loci[index]

    def __eq__(self, other):
        return isinstance(other, QTLSet) and self.loci == other.loci

    def __repr__(self):
        inner = ", ".join(f"{name}={locus}" for name, locus in zip(self.names, self.loci))
        return f"QTLSet({inner})"

    def add(self, locus: Locus) -> "QTLSet":
        """Append a locus; it becomes Q(n+1)."""
        return self._derive(self.loci + [locus])

    def drop(self, index: int) -> "QTLSet":
        """Remove Q<index> (1-based); later loci shift down so names stay Q1..Q(n-1)."""
        if not 1 <= index <= len(self.loci):
            raise IndexError(f"Q{index} is not in a model with {len(self.loci)} QTL.")
        return self._derive(self.loci[:index - 1] + self.loci[index:])

    def with_positions(self, positions: Sequence[float]) -> "QTLSet":
        if len(positions) != len(self.loci):
            raise ValueError("Number of refined positions does not match the number of QTL.")
        return self._derive([Locus(locus.chr, float(pos)) for locus, pos in zip(self.loci, positions)])

    def reorder(self, order: Sequence[int]) -> "QTLSet":
        """New set whose i-th locus is the order[i]-th (0-based) locus of this one."""
        return self._derive([self.loci[i] for i in order])

    def genome_order(self, chr_order: Sequence[str]) -> List[int]:
        """0-based indices sorting loci by (chromosome order, position)."""
        rank = {str(c): i for i, c in enumerate(chr_order)}
        missing = [c for c in self.chrs if c not in rank]
        if missing:
            raise ValueError(f"Chromosome(s) {sorted(set(missing))} not in genome description.")
        return sorted(range(len(self.loci)), key=lambda i: (rank[self.loci[i].chr], self.loci[i].pos, i))

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"name": self.names, "chr": self.chrs, "pos": self.positions})


@dataclass(frozen=True)
class Term:
    """A model term: a QTL main effect, a QTL:QTL interaction or a covariate."""
    kind: str
    loci: Tuple[int, ...] = ()
    covar: str = ""

    @classmethod
    def main(cls, i: int) -> "Term":
        return cls("qtl", (int(i),))

    @classmethod
    def interaction(cls, i: int, j: int) -> "Term":
        i, j = sorted((int(i), int(j)))
        if i == j:
            raise ValueError(f"Q{i} cannot interact with itself.")
        return cls("int", (i, j))

    @classmethod
    def covariate(cls, name: str) -> "Term":
        return cls("covar", (), str(name))

    @property
    def is_qtl(self) -> bool:
        return self.kind in ("qtl", "int")

    @property
    def name(self) -> str:
        if self.kind == "covar":
            return self.covar
        return ":".join(f"Q{i}" for i in self.loci)

    def sort_key(self):
        return ({"covar": 0, "qtl": 1, "int": 2}[self.kind], self.loci, self.covar)

    def __str__(self):
        return self.name


class Formula:
    """
    Model formula kept as structured terms; the display string is derived on demand.

    Every locus referenced by an interaction also appears as a main effect.
    """

    def __init__(self, terms: Iterable[Term] = (), response: str = "y"):
        self.response = response
        unique = {}
        for term in terms:
            unique[term] = None
        self.terms: Tuple[Term, ...] = tuple(sorted(unique, key=Term.sort_key))

    @classmethod
    def additive(cls, n_qtl: int, covariates: Sequence[str] = (), response: str = "y") -> "Formula":
        """y ~ covariates + Q1 + ... + Qn"""
        terms = [Term.covariate(c) for c in covariates]
        terms += [Term.main(i) for i in range(1, n_qtl + 1)]
        return cls(terms, response=response)

    @classmethod
    def parse(cls, text: str) -> "Formula":
        """
        Parse a formula such as ``y ~ sex + Q1 + Q2 + Q1:Q2``.

        ``Qi*Qj`` expands to both main effects and their interaction.
        """
        if text is None or not str(text).strip():
            raise ValueError("Formula is empty.")
        text = str(text)
        response = "y"
        if "~" in text:
            lhs, text = text.split("~", 1)
            response = lhs.strip() or "y"
        terms: List[Term] = []
        for raw in text.split("+"):
            token = raw.strip().replace(" ", "")
            if not token or token == "1":
                continue
            if "*" in token:
                parts = token.split("*")
                idx = [cls._qtl_index(p, raw) for p in parts]
                terms += [Term.main(i) for i in idx]
                for a in range(len(idx)):
                    for b in range(a + 1, len(idx)):
                        terms.append(Term.interaction(idx[a], idx[b]))
            elif ":" in token:
                parts = token.split(":")
                if len(parts) != 2:
                    raise ValueError(f"Only pairwise interactions are supported: '{raw.strip()}'")
                terms.append(Term.interaction(cls._qtl_index(parts[0], raw), cls._qtl_index(parts[1], raw)))
            elif QTL_NAME_RE.match(token):
                terms.append(Term.main(cls._qtl_index(token, raw)))
            else:
                terms.append(Term.covariate(token))
        return cls(terms, response=response)

    @staticmethod
    def _qtl_index(token: str, raw: str) -> int:
        m = QTL_NAME_RE.match(token)
        if m is None:
            raise ValueError(f"Interaction terms may only involve QTL: '{raw.strip()}'")
        idx = int(m.group(1))
        if idx < 1:
            raise ValueError(f"QTL indices start at 1: '{raw.strip()}'")
        return idx

    # ---- views ----

    @property
    def mains(self) -> List[int]:
        return [t.loci[0] for t in self.terms if t.kind == "qtl"]

    @property
    def interactions(self) -> List[Tuple[int, int]]:
        return [t.loci for t in self.terms if t.kind == "int"]

    @property
    def covariates(self) -> List[str]:
        return [t.covar for t in self.terms if t.kind == "covar"]

    @property
    def qtl_terms(self) -> List[Term]:
        return [t for t in self.terms if t.is_qtl]

    def referenced_qtl(self) -> List[int]:
        seen = set()
        for t in self.qtl_terms:
            seen.update(t.loci)
        return sorted(seen)

    def missing_mains(self) -> List[int]:
        mains = set(self.mains)
        return sorted({i for pair in self.interactions for i in pair} - mains)

    def is_consistent(self, n_qtl: int) -> bool:
        return not self.missing_mains() and all(1 <= i <= n_qtl for i in self.referenced_qtl())

    # ---- structural changes, each returning a new Formula ----

    def with_terms(self, *terms: Term) -> "Formula":
        return Formula(self.terms + tuple(terms), response=self.response)

    def without_term(self, term: Term) -> "Formula":
        if term not in self.terms:
            raise KeyError(f"Term {term.name} is not in formula {self}.")
        return Formula([t for t in self.terms if t != term], response=self.response)

    def renumber(self, mapping: Dict[int, int]) -> "Formula":
        """Rewrite QTL indices through ``mapping`` (old -> new); unmapped indices are kept."""
        terms = []
        for t in self.terms:
            if t.kind == "qtl":
                terms.append(Term.main(mapping.get(t.loci[0], t.loci[0])))
            elif t.kind == "int":
                terms.append(Term.interaction(*(mapping.get(i, i) for i in t.loci)))
            else:
                terms.append(t)
        return Formula(terms, response=self.response)

    def drop_qtl(self, index: int, n_qtl: int) -> "Formula":
        """
        Remove Q<index> and every interaction referencing it, then shift
        Q(index+1)..Q(n_qtl) down by one.
        """
        kept = [t for t in self.terms if index not in t.loci]
        mapping = {j: j - 1 for j in range(index + 1, n_qtl + 1)}
        return Formula(kept, response=self.response).renumber(mapping)

    # ---- penalty bookkeeping ----

    def count_terms(self) -> Tuple[int, int, int]:
        """
        (main effects, heavy interactions, light interactions), covariates ignored.

        QTL joined by interactions form connected groups; the first interaction
        in each group carries the light penalty, any further ones the heavy penalty.
        """
        n_main = len(self.mains)
        pairs = self.interactions
        if not pairs:
            return n_main, 0, 0
        uf = UnionFind()
        for i, j in pairs:
            uf.union(i, j)
        per_group: Dict[int, int] = {}
        for i, _ in pairs:
            root = uf.find(i)
            per_group[root] = per_group.get(root, 0) + 1
        n_light = len(per_group)
        n_heavy = sum(per_group.values()) - n_light
        return n_main, n_heavy, n_light

    # ---- display ----

    def __str__(self):
        rhs = " + ".join(t.name for t in self.terms)
        return f"{self.response} ~ {rhs}" if rhs else f"{self.response} ~ 1"

    def __repr__(self):
        return f"Formula('{self}')"

    def __eq__(self, other):
        return isinstance(other, Formula) and set(self.terms) == set(other.terms) \
            and self.response == other.response

    def __hash__(self):
        return hash((self.response, self.terms))


@dataclass(frozen=True)
class ScoreRecord:
    lod: float
    plod: float
    counts: Tuple[int, int, int]

    @classmethod
    def compute(cls, lod: float, formula: Formula, penalties: Sequence[float]) -> "ScoreRecord":
        counts = formula.count_terms()
        return cls(float(lod), calc_plod(lod, counts, penalties), counts)


@dataclass(frozen=True)
class ModelState:
    qtl: QTLSet
    formula: Formula
    score: ScoreRecord

    @property
    def n_qtl(self) -> int:
        return self.qtl.n_qtl

    @property
    def plod(self) -> float:
        return self.score.plod

    @property
    def lod(self) -> float:
        return self.score.lod


class BestSoFar:
    """Best model seen so far; a model is adopted only when its pLOD strictly exceeds the current one (start 0)."""

    def __init__(self):
        self.state: Optional[ModelState] = None
        self.plod: float = 0.0

    def offer(self, state: ModelState) -> bool:
        if state.plod > self.plod:
            self.state = state
            self.plod = state.plod
            return True
        return False


@dataclass(frozen=True)
class TraceEntry:
    step: int
    loci: Tuple[Tuple[str, float], ...]
    formula: str
    plod: float

    @property
    def n_qtl(self) -> int:
        return len(self.loci)


class TraceRecorder:
    """Append-only record of the model visited at each step (0 = initial model)."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self.entries: List[TraceEntry] = []

    def record(self, step: int, state: ModelState):
        if not self.enabled:
            return
        if self.entries and step <= self.entries[-1].step:
            raise ValueError(f"Trace steps must increase: got {step} after {self.entries[-1].step}.")
        loci = tuple((locus.chr, locus.pos) for locus in state.qtl)
        self.entries.append(TraceEntry(step, loci, str(state.formula), state.plod))

    def __len__(self):
        return len(self.entries)

    def to_frame(self) -> pd.DataFrame:
        rows = [
            {
                "step": e.step,
                "n_qtl": e.n_qtl,
                "loci": ";".join(f"{c}@{p:.2f}" for c, p in e.loci),
                "formula": e.formula,
                "pLOD": e.plod,
            }
            for e in self.entries
        ]
        return pd.DataFrame(rows, columns=["step", "n_qtl", "loci", "formula", "pLOD"])


@dataclass
class StepwiseResult:
    """Best model found by the search, in genome order."""
    qtl: QTLSet
    formula: Formula
    plod: float
    lod: float = 0.0
    trace: Optional[List[TraceEntry]] = None
    trace_table: Optional[pd.DataFrame] = field(default=None, repr=False)

    @property
    def formula_str(self) -> str:
        return str(self.formula)

    @property
    def n_qtl(self) -> int:
        return self.qtl.n_qtl

    def to_frame(self) -> pd.DataFrame:
        return self.qtl.to_frame()

    def trace_frame(self) -> Optional[pd.DataFrame]:
        return self.trace_table
