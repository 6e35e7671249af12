"""
seq_report.py

PDF reports for the counts and matches pipelines.

Counts report pages
    1. UpSet plot of which models found each read
    2. Top sequence combinations by frequency
    3. Trimmed sequence length distribution per model

Matches report page
    Levenshtein distance distribution per query
"""

import logging

import numpy as np
import pandas as pd
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
from matplotlib.backends.backend_pdf import PdfPages
from upsetplot import UpSet, from_contents

logger = logging.getLogger(__name__)

TOP_N_COMBINATIONS = 20


def _short(seq, maxlen=18):
    return seq if len(seq) <= maxlen else seq[:maxlen - 1] + "…"


def plot_model_coverage(coverage_sets, pdf):
    """UpSet plot of read sets per model."""
    sets = {m: reads for m, reads in coverage_sets.items() if reads}
    if not sets:
        logger.warning("No reads found by any model - skipping coverage plot")
        return
    try:
        data = from_contents(sets)
        fig = plt.figure(figsize=(11, 7))
        UpSet(data, subset_size="count", show_counts="%d",
              sort_by="cardinality").plot(fig=fig)
        fig.suptitle("Reads found per model combination", fontsize=14)
        pdf.savefig(fig, bbox_inches="tight")
        plt.close(fig)
    except Exception as e:
        plt.close("all")
        logger.warning(f"UpSet plot generation failed ({e}) - continuing without it")


def plot_top_combinations(rows, pdf, top_n=TOP_N_COMBINATIONS):
    rows = list(rows)[:top_n]
    if not rows:
        logger.warning("No combinations counted - skipping combination plot")
        return
    labels = [" | ".join(_short(s) for s in r.sequences.values()) for r in rows]
    pct = np.array([r.frequency for r in rows]) * 100

    fig, ax = plt.subplots(figsize=(11, max(4, 0.35 * len(rows) + 1.5)))
    y = np.arange(len(rows))
    bars = ax.barh(y, pct, color="steelblue")
    for bar, r in zip(bars, rows):
        ax.text(bar.get_width(), bar.get_y() + bar.get_height() / 2,
                f" {r.count:,}", va="center", fontsize=7)
    ax.set_yticks(y)
    ax.set_yticklabels(labels, fontsize=7, family="monospace")
    ax.invert_yaxis()
    ax.set_xlabel("Frequency (%)")
    ax.set_title(f"Top {len(rows)} sequence combinations "
                 f"(total {rows[0].total_count:,} reads)")
    ax.grid(False)
    plt.tight_layout()
    pdf.savefig(fig)
    plt.close(fig)


def plot_length_distributions(lengths, pdf):
    lengths = {m: v for m, v in lengths.items() if v}
    if not lengths:
        return
    fig, axes = plt.subplots(len(lengths), 1, squeeze=False,
                             figsize=(9, 2.8 * len(lengths)))
    for ax, (model, values) in zip(axes[:, 0], lengths.items()):
        values = np.asarray(values)
        bins = np.arange(values.min(), values.max() + 2) - 0.5
        ax.hist(values, bins=bins, color="grey", edgecolor="black", linewidth=0.3)
        ax.axvline(np.median(values), color="red", linestyle="--", linewidth=1)
        ax.set_title(f"{model}: n={len(values):,}, median={np.median(values):.0f} aa",
                     fontsize=10)
        ax.set_xlabel("Trimmed length (aa)")
        ax.set_ylabel("Reads")
    plt.tight_layout()
    pdf.savefig(fig)
    plt.close(fig)


def _message_page(pdf, text):
    fig, ax = plt.subplots(figsize=(9, 5))
    ax.text(0.5, 0.5, text, ha="center", va="center", fontsize=14)
    ax.set_axis_off()
    pdf.savefig(fig)
    plt.close(fig)


def generate_counts_report(rows, aggregator, pdf_path):
    with PdfPages(pdf_path) as pdf:
        if not len(aggregator):
            _message_page(pdf, "No reads were found by any model")
        plot_model_coverage(aggregator.coverage_sets(), pdf)
        plot_top_combinations(rows, pdf)
        plot_length_distributions(aggregator.sequence_lengths(), pdf)
        d = pdf.infodict()
        d["Title"] = "HMM sequence combination counts"
    logger.info(f"Counts report written to {pdf_path}")
    return pdf_path


def generate_matches_report(matches_df: pd.DataFrame, pdf_path):
    with PdfPages(pdf_path) as pdf:
        if matches_df.empty:
            _message_page(pdf, "No matches")
        else:
            fig, ax = plt.subplots(figsize=(9, 5))
            for query, sub in matches_df.groupby("Trimmed_Query_Seq", sort=False):
                dists = sub["Levenshtein_Dist"].to_numpy()
                bins = np.arange(0, dists.max() + 2) - 0.5
                ax.hist(dists, bins=bins, histtype="step", label=_short(query, 30))
            ax.set_xlabel("Levenshtein distance")
            ax.set_ylabel("Reference rows")
            ax.set_title("Distance to reference sequences")
            if matches_df["Trimmed_Query_Seq"].nunique() <= 10:
                ax.legend(fontsize=7)
            plt.tight_layout()
            pdf.savefig(fig)
            plt.close(fig)
    logger.info(f"Matches report written to {pdf_path}")
    return pdf_path
