from fvqtl import __version__
from fvqtl.data import CrossData, read_covar
from fvqtl.log import logger, set_verbosity
from fvqtl.stepwise import scanone_f, stepwiseqtl_f
from fvqtl.viz import Visualizer

import argparse
import os
import sys
from typing import List, Optional, Union

import matplotlib.pyplot as plt


def parse_pheno_cols(tokens: Optional[List[str]], columns=None) -> Optional[List[Union[int, str]]]:
    """
    Turn --pheno_cols tokens into column names or 0-based positions.

    A token matching a column name is taken as that name, so a column called "3"
    is selected by name; other all-digit tokens are positions.
    """
    names = set() if columns is None else {str(c) for c in columns}
    if not tokens:
        return None
    cols: List[Union[int, str]] = []
    for token in tokens:
        for part in token.split(","):
            part = part.strip()
            if not part:
                continue
            cols.append(int(part) if part.isdigit() and part not in names else part)
    return cols


def parse_qtl(tokens: Optional[List[str]]):
    """Parse chr@pos tokens into parallel chromosome and position lists."""
    if not tokens:
        return None
    chrs, positions = [], []
    for token in tokens:
        if "@" not in token:
            raise ValueError(f"QTL must be given as chr@pos, got '{token}'.")
        chrom, pos = token.rsplit("@", 1)
        try:
            positions.append(float(pos))
        except ValueError:
            raise ValueError(f"Invalid QTL position in '{token}'.")
        chrs.append(chrom)
    return chrs, positions


def load_inputs(args):
    if not args.geno and not args.draws:
        raise ValueError("At least one of --geno or --draws is required.")
    cross = CrossData.read(args.geno, args.phe, draws_file=args.draws, sample_col=args.sample_col, sep=args.sep)
    covar = None
    if args.covar:
        covar = read_covar(args.covar, cross.samples, sample_col=args.sample_col, sep=args.sep)
    return cross, covar


def run_scan(args):
    """Process scan subcommand."""
    logger.info("Initializing single-QTL genome scan...")
    cross, covar = load_inputs(args)
    pheno_cols = parse_pheno_cols(args.pheno_cols, cross.pheno.columns)
    out = scanone_f(cross, pheno_cols=pheno_cols, usec=args.usec, covar=covar,
                    method=args.method, chr=args.chr, n_jobs=args.threads)

    top = out.sort_values(args.usec, ascending=False).head(args.top)
    logger.info(f"Top {len(top)} positions by {args.usec}:")
    for _, row in top.iterrows():
        logger.info(f"  {row['chr']}@{row['pos']:.2f}  {args.usec} = {row[args.usec]:.4f}")
    out.to_csv(sys.stdout, sep="\t", index=False)

    if args.plot:
        os.makedirs(args.out_dir, exist_ok=True)
        visualizer = Visualizer()
        fig = plt.figure(figsize=(args.width, args.height))
        ax = fig.add_subplot(111)
        visualizer.plot_lod_profile(out, lod_column=args.usec, show_columns=True, ax=ax)
        visualizer.save(fig, os.path.join(args.out_dir, f"{args.out_name}.{args.format}"))

    logger.info("Done!")


def run_stepwise(args):
    """Process stepwise subcommand."""
    logger.info("Initializing stepwise QTL model search...")
    cross, covar = load_inputs(args)

    qtl = None
    start = parse_qtl(args.qtl)
    if start is not None:
        what = "draws" if args.method == "imp" else "prob"
        qtl = cross.make_qtl(start[0], start[1], what=what)

    result = stepwiseqtl_f(
        cross,
        pheno_cols=parse_pheno_cols(args.pheno_cols, cross.pheno.columns),
        qtl=qtl,
        formula=args.formula,
        usec=args.usec,
        max_qtl=args.max_qtl,
        covar=covar,
        method=args.method,
        refine_locations=args.refine,
        additive_only=not args.interactions,
        penalties=args.penalties,
        keeptrace=args.keeptrace or bool(args.plot),
        seed=args.seed,
        chr=args.chr,
        n_jobs=args.threads,
    )

    print(f"# formula: {result.formula_str}")
    print(f"# pLOD: {result.plod}")
    result.to_frame().to_csv(sys.stdout, sep="\t", index=False)
    if args.keeptrace:
        print("# trace")
        result.trace_frame().to_csv(sys.stdout, sep="\t", index=False)

    if args.plot:
        os.makedirs(args.out_dir, exist_ok=True)
        visualizer = Visualizer()
        fig = plt.figure(figsize=(args.width, args.height))
        ax = fig.add_subplot(111)
        visualizer.plot_trace(result.trace_frame(), best_plod=result.plod, ax=ax)
        visualizer.save(fig, os.path.join(args.out_dir, f"{args.out_name}.{args.format}"))

    logger.info("Done!")


def add_input_arguments(parser):
    input_group = parser.add_argument_group("Input Options")
    input_group.add_argument("--geno", type=str, help="Genotype probability table (columns: chr, pos, sample, one column per genotype)")
    input_group.add_argument("--draws", type=str, help="Genotype imputation table (columns: chr, pos, sample, one column per imputation; genotype codes 1..k)")
    input_group.add_argument("--phe", type=str, required=True, help="Phenotype table (sample column + one column per measurement)")
    input_group.add_argument("--covar", type=str, help="Covariate table (sample column + covariate columns)")
    input_group.add_argument("--sample_col", type=str, default=None, help="Sample ID column name (default: first column)")
    input_group.add_argument("--sep", type=str, default="auto", help="Input separator: auto/csv/tsv/tab (default: %(default)s)")
    input_group.add_argument("--pheno_cols", type=str, nargs="+", help="Phenotype columns to use, as names or 0-based positions (default: all)")
    input_group.add_argument("--chr", type=str, nargs="+", help="Chromosomes to consider; prefix with '-' to exclude")

    method_group = parser.add_argument_group("Method Options")
    method_group.add_argument("--usec", type=str, default="slod", choices=["slod", "mlod"], help="Combine phenotype columns by mean (slod) or max (mlod) LOD (default: %(default)s)")
    method_group.add_argument("--method", type=str, default="hk", choices=["hk", "imp"], help="Haley-Knott regression or multiple imputation (default: %(default)s)")
    method_group.add_argument("--threads", type=int, default=1, help="Worker threads for evaluating candidate positions (default: %(default)s)")
    method_group.add_argument("--verbose", action="store_true", help="Also log the QTL of every visited model")

    plot_group = parser.add_argument_group("Plot Options")
    plot_group.add_argument("--plot", action="store_true", help="Save a figure")
    plot_group.add_argument("--width", type=float, default=8, help="Figure width (default: %(default)s)")
    plot_group.add_argument("--height", type=float, default=4, help="Figure height (default: %(default)s)")
    plot_group.add_argument("--format", type=str, default="png", help="Figure format: png/pdf/svg (default: %(default)s)")
    plot_group.add_argument("--out_dir", type=str, default=".", help="Output directory for figures (default: %(default)s)")


def build_parser():
    description = """
    fvqtl: stepwise multiple-QTL model selection for function-valued traits.
    """

    epilog = """
    Example usage:
    fvqtl stepwise --geno genoprob.tsv --phe growth.tsv --penalties 2.36 2.76 2 --max_qtl 4 --usec slod --keeptrace
    """

    parser = argparse.ArgumentParser(
        description=description,
        epilog=epilog,
        formatter_class=argparse.RawDescriptionHelpFormatter  # Preserve formatting
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    scan_parser = subparsers.add_parser("scan", help="Single-QTL genome scan with slod/mlod")
    add_input_arguments(scan_parser)
    scan_parser.add_argument("--top", type=int, default=5, help="Number of top positions to report (default: %(default)s)")
    scan_parser.add_argument("--out_name", type=str, default="scan", help="Output figure name prefix (default: %(default)s)")
    scan_parser.set_defaults(func=run_scan)

    stepwise_parser = subparsers.add_parser("stepwise", help="Forward/backward search for a multiple-QTL model")
    add_input_arguments(stepwise_parser)
    search_group = stepwise_parser.add_argument_group("Search Options")
    search_group.add_argument("--penalties", type=float, nargs="+", required=True, help="Penalties on main effects and heavy/light interactions (1 to 3 values)")
    search_group.add_argument("--max_qtl", type=int, default=10, help="Maximum number of QTL in forward selection (default: %(default)s)")
    search_group.add_argument("--qtl", type=str, nargs="+", help="Starting QTL as chr@pos")
    search_group.add_argument("--formula", type=str, help="Starting formula, e.g. 'y ~ Q1 + Q2' (requires --qtl)")
    search_group.add_argument("--no_refine", action="store_false", dest="refine", help="Do not refine QTL positions after each step")
    search_group.add_argument("--interactions", action="store_true", help="Request QTL interactions (only additive models are supported; downgraded with a warning)")
    search_group.add_argument("--keeptrace", action="store_true", help="Print the model visited at each step")
    search_group.add_argument("--seed", type=int, default=None, help="Random seed for tie-breaking (default: %(default)s)")
    stepwise_parser.add_argument("--out_name", type=str, default="stepwise", help="Output figure name prefix (default: %(default)s)")
    stepwise_parser.set_defaults(func=run_stepwise)

    return parser


def main(argv=None):
    parser = build_parser()
    # Parse arguments and execute the corresponding subcommand
    args = parser.parse_args(argv)
    set_verbosity(getattr(args, "verbose", False))
    if args.command:
        args.func(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
