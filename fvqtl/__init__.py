"""fvqtl package

Stepwise multiple-QTL model search for function-valued traits.

Core modules:
- fvqtl.stepwise: forward/backward model search (stepwiseqtl_f)
- fvqtl.scoring: slod/mlod aggregation, penalized LOD, tie-breaking
- fvqtl.model: QTL sets, formulas, scores and search trace
- fvqtl.adapters: scan, fit and refinement contracts
- fvqtl.data: cross data and data preparation
- fvqtl.hk: Haley-Knott / imputation regression engine
- fvqtl.viz: Visualization utilities
- fvqtl.fvqtl: CLI entry point (main)
"""

__version__ = "1.0.0"

__all__ = [
    "stepwise",
    "adapters",
    "scoring",
    "model",
    "data",
    "hk",
    "viz",
    "fvqtl",
]
