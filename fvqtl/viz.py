import numpy as np
import pandas as pd
import matplotlib as mpl
mpl.use('Agg')
import matplotlib.pyplot as plt

from fvqtl.log import logger
from typing import List, Optional


class Visualizer:
    def __init__(self):
        pass

    def plot_lod_profile(self, scan_df: pd.DataFrame, lod_column: str = "slod", qtl=None,
                         chr_gap: float = 10, chr_colors: Optional[List[str]] = None,
                         show_columns: bool = False, xlabel=None, ylabel=None, title=None, ax=None):
        """
        Plot a LOD profile across chromosomes.

        :param scan_df: DataFrame with columns chr, pos (cM) and LOD columns, in genome order
        :param lod_column: column holding the aggregated LOD (e.g. 'slod' or 'mlod')
        :param qtl: optional QTLSet whose positions are marked on the profile
        :param chr_gap: gap between chromosomes (cM)
        :param chr_colors: colors cycled over chromosomes
        :param show_columns: also draw every per-phenotype LOD column in light grey
        :param xlabel: X-axis label
        :param ylabel: Y-axis label
        :param title: Title of the plot
        :param ax: Matplotlib Axes object for plotting
        """
        logger.info("Plotting LOD profile...")
        if ax is None:
            raise ValueError("Please provide a valid Matplotlib Axes object for plotting.")
        if lod_column not in scan_df.columns:
            raise ValueError(f"Column '{lod_column}' not found in scan results.")
        if chr_colors is None:
            chr_colors = ["#1f4e79", "#7f9fbf"]  # Default colors

        extra = []
        if show_columns:
            extra = [c for c in scan_df.columns if c not in ("chr", "pos", "slod", "mlod")]

        # Calculate cumulative positions for each chromosome
        chrom_start = {}
        chrom_center = {}
        current_pos = 0
        for k, (chrom, group) in enumerate(scan_df.groupby("chr", sort=False)):
            chrom_start[chrom] = current_pos - group["pos"].min()
            chrom_center[chrom] = current_pos + (group["pos"].max() - group["pos"].min()) / 2
            x = group["pos"] + chrom_start[chrom]
            for col in extra:
                ax.plot(x, group[col], color="lightgray", linewidth=0.5)
            ax.plot(x, group[lod_column], color=chr_colors[k % len(chr_colors)], linewidth=1.5)
            current_pos += group["pos"].max() - group["pos"].min() + chr_gap

        if qtl is not None:
            for name, locus in zip(qtl.names, qtl):
                if locus.chr not in chrom_start:
                    continue
                x = locus.pos + chrom_start[locus.chr]
                ax.axvline(x, color="firebrick", linestyle="--", linewidth=1)
                ax.text(x, ax.get_ylim()[1], name, ha="center", va="bottom", fontsize=8, color="firebrick")

        ax.set_xticks(list(chrom_center.values()), [str(c) for c in chrom_center])
        ax.spines[['top', 'right']].set_visible(False)
        ax.set_xlabel(xlabel if xlabel is not None else "Chromosome")
        ax.set_ylabel(ylabel if ylabel is not None else f"LOD ({lod_column})")
        ax.set_xlim(-chr_gap / 2, max(current_pos - chr_gap / 2, chr_gap / 2))
        ax.set_ylim(min(0, ax.get_ylim()[0]), ax.get_ylim()[1])
        ax.set_title(title if title is not None else "LOD profile")

    def plot_trace(self, trace_df: pd.DataFrame, best_plod: Optional[float] = None,
                   xlabel=None, ylabel=None, title=None, ax=None):
        """
        Plot pLOD of the model visited at each step, annotated with the number of QTL.

        :param trace_df: DataFrame with columns step, n_qtl, pLOD (TraceRecorder.to_frame())
        :param best_plod: pLOD of the selected model, drawn as a horizontal line
        :param ax: Matplotlib Axes object for plotting
        """
        logger.info("Plotting search trace...")
        if ax is None:
            raise ValueError("Please provide a valid Matplotlib Axes object for plotting.")
        if trace_df is None or len(trace_df) == 0:
            raise ValueError("Trace is empty; run the search with keeptrace enabled.")

        plod = trace_df["pLOD"].to_numpy(dtype=float)
        # models with infinite penalties have pLOD = -inf
        finite = np.isfinite(plod)
        ax.plot(trace_df["step"][finite], plod[finite], marker="o", color="#1f4e79")
        for step, n_qtl, value in zip(trace_df["step"][finite], trace_df["n_qtl"][finite], plod[finite]):
            ax.annotate(str(n_qtl), (step, value), textcoords="offset points", xytext=(0, 6),
                        ha="center", fontsize=8)

        if best_plod is not None:
            ax.axhline(best_plod, color="firebrick", linestyle="--", linewidth=1, label=f"best pLOD {best_plod:.2f}")
            ax.legend(loc="lower right", frameon=False)

        ax.spines[['top', 'right']].set_visible(False)
        ax.set_xlabel(xlabel if xlabel is not None else "Step")
        ax.set_ylabel(ylabel if ylabel is not None else "pLOD")
        ax.set_title(title if title is not None else "Stepwise search")

    def save(self, fig, path: str):
        plt.tight_layout()
        fig.savefig(path, dpi=300, bbox_inches="tight")
        plt.close(fig)
        logger.info(f"Saved figure: {path}")
