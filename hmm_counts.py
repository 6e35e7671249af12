#!/usr/bin/env python3
"""
hmm_counts.py

Count cross-model sequence combinations in FASTQ reads.

For every FASTQ the reads are split into batches, quality filtered and
translated in all six frames.  Each batch is searched with every HMM
model, the best hit per read is trimmed out of the translation, and reads
found by all models contribute one combination of trimmed sequences.
Identical combinations are counted across the whole run.

Usage example
─────────────
    python3 hmm_counts.py --config counts_config.json

    python3 hmm_counts.py \\
        --input run1.fastq.gz:models/VH.hmm \\
        --input run1.fastq.gz:models/VL.hmm \\
        --hmm-coverage 0.5 --min-quality 20 \\
        [--counts-output ngs_counts.csv] [--hits-output hits.csv] \\
        [--plots-output counts_report.pdf]

Requirements: seqkit, hmmsearch, biopython, pandas, numpy, matplotlib,
upsetplot, tqdm
"""

import argparse
import logging
import os
import shutil
import sys
import tempfile
import time
from collections import OrderedDict

import numpy as np
from tqdm import tqdm

import hmm_tools
from domtbl_hits import (best_hits_from_file, canonical_read_id,
                         regions_from_hits, write_bed)
from hmm_tools import ToolError
from pipeline_config import EXTRACTORS, load_counts_config
from seq_combos import (ModelSequenceAggregator, count_aggregator, hit_rows,
                        write_counts_table, write_hits_table)

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# One (batch, model) unit
# ─────────────────────────────────────────────────────────────────────────────

def extract_trimmed(translated_fasta, best_hits, work_prefix, extractor="seqkit"):
    """Return {canonical read id: trimmed sequence} for the selected hits."""
    regions = regions_from_hits(best_hits)
    if not regions:
        return OrderedDict()
    if extractor == "seqkit":
        bed_path = f"{work_prefix}_output.bed"
        trimmed_path = f"{work_prefix}_trimmed.fasta"
        write_bed(regions, bed_path)
        hmm_tools.seqkit_subseq(translated_fasta, bed_path, trimmed_path)
        by_target = hmm_tools.read_subseq_fasta(trimmed_path)
    else:
        by_target = hmm_tools.extract_regions(translated_fasta, regions)
    return OrderedDict((canonical_read_id(t), seq) for t, seq in by_target.items())


def search_batch(translated_fasta, model_path, work_prefix, hmm_coverage,
                 extractor="seqkit", cpu=None):
    """
    Search one translated batch with one model.

    Returns (best_hits, trimmed) where trimmed maps canonical read id to
    the aligned sub-sequence of its best hit.
    """
    domtbl_path = f"{work_prefix}.domtblout"
    stdout_path = f"{work_prefix}.stdout"
    hmm_tools.run_hmmsearch(model_path, translated_fasta, domtbl_path,
                            stdout_path, cpu=cpu)
    best, stats = best_hits_from_file(domtbl_path, score_field="domain",
                                      min_coverage=hmm_coverage)
    logger.debug(f"{work_prefix}: {stats['records']:,} hits, "
                 f"{len(best):,} reads kept")
    trimmed = extract_trimmed(translated_fasta, best, work_prefix, extractor)
    return best, trimmed


def process_batch(batch_fastq, model_paths, work_dir, config, aggregator,
                  detail_rows=None, on_unit_done=None, batch_name=None):
    """
    Translate one FASTQ batch and search it with every model.

    A failing unit raises ToolError naming the batch and model; units of
    this batch that already finished stay in the aggregator, the failing
    one contributes nothing.  ``batch_name`` keys the reads of this batch
    in the aggregator and defaults to the FASTQ file name.
    """
    if batch_name is None:
        batch_name = hmm_tools.batch_name_from_path(batch_fastq)
    translated = os.path.join(work_dir, f"{batch_name}_translated.fasta")
    try:
        hmm_tools.seqkit_translate(batch_fastq, config["min_quality"], translated)
    except (ToolError, OSError) as e:
        raise ToolError(f"Batch {batch_name}: translation failed: {e}") from e

    for model_path in model_paths:
        model_name = hmm_tools.model_name_from_path(model_path)
        prefix = os.path.join(work_dir, f"{batch_name}_{model_name}")
        try:
            best, trimmed = search_batch(
                translated, model_path, prefix, config["hmm_coverage"],
                extractor=config["extractor"], cpu=config.get("cpu"))
        except (ToolError, OSError, ValueError) as e:
            raise ToolError(f"Batch {batch_name} with model "
                            f"{model_name} failed: {e}") from e
        aggregator.add_batch(model_name, batch_name, trimmed)
        if detail_rows is not None:
            detail_rows.extend(hit_rows(best, trimmed, batch_name, model_name))
        logger.debug(f"{batch_name} / {model_name}: "
                     f"{len(trimmed):,} trimmed sequences")
        if on_unit_done:
            on_unit_done()

    if not config.get("keep_temp"):
        os.remove(translated)


# ─────────────────────────────────────────────────────────────────────────────
# Pipeline
# ─────────────────────────────────────────────────────────────────────────────

def _group_models_by_fastq(input_pairs):
    """Map each distinct FASTQ path to its models, in input order."""
    grouped = OrderedDict()
    for pair in input_pairs:
        models = grouped.setdefault(pair["fastq_path"], [])
        if pair["model_path"] not in models:
            models.append(pair["model_path"])
    return grouped


def run_pipeline(config, progress=True):
    """Run the counts pipeline for a validated config dict.

    Parameters
    ----------
    config : dict
        As returned by ``pipeline_config.load_counts_config``.
    progress : bool
        Show a progress bar over (batch, model) units.

    Returns
    -------
    dict with keys:
        rows         – tuple of FrequencyRow, most frequent first
        counts_df    – pandas DataFrame written to counts_path
        aggregator   – the ModelSequenceAggregator holding all reads
        counts_path  – str path to the counts CSV
        hits_path    – str path to the per-hit CSV (or None)
        plots_path   – str path to the PDF report (or None)
    """
    t0 = time.time()
    extractor = config["extractor"]
    if extractor not in EXTRACTORS:
        raise ValueError(f"Unknown extractor {extractor!r}")

    aggregator = ModelSequenceAggregator()
    detail_rows = [] if config.get("hits_outpath") else None
    work_dir = tempfile.mkdtemp(prefix="hmm_counts_")
    logger.info(f"Working directory: {work_dir}")

    try:
        grouped = _group_models_by_fastq(config["input_pairs"])
        units = []
        for i, (fastq_path, model_paths) in enumerate(grouped.items(), 1):
            # same-named FASTQs from different directories must not share
            # a split directory or batch names
            tag = f"{i}_{hmm_tools.batch_name_from_path(fastq_path)}"
            split_dir = os.path.join(work_dir, "split", tag)
            logger.info(f"Splitting {fastq_path} into batches of "
                        f"{config['reads_per_batch']:,} reads …")
            batches = hmm_tools.seqkit_split(fastq_path, split_dir,
                                             config["reads_per_batch"])
            logger.info(f"  {len(batches)} batches")
            for b in batches:
                units.append((b, model_paths,
                              f"{i}_{hmm_tools.batch_name_from_path(b)}"))

        n_units = sum(len(models) for _, models, _ in units)
        with tqdm(total=n_units, desc="Searching batches",
                  disable=not progress) as bar:
            for batch_fastq, model_paths, batch_name in units:
                process_batch(batch_fastq, model_paths, work_dir, config,
                              aggregator, detail_rows,
                              on_unit_done=lambda: bar.update(1),
                              batch_name=batch_name)
    finally:
        if config.get("keep_temp"):
            logger.info(f"Intermediate files kept in {work_dir}")
        else:
            shutil.rmtree(work_dir, ignore_errors=True)

    rows = count_aggregator(aggregator)
    counts_path = config["counts_outpath"]
    counts_df = write_counts_table(rows, aggregator.models, counts_path)

    hits_path = None
    if detail_rows is not None:
        hits_path = config["hits_outpath"]
        write_hits_table(detail_rows, hits_path)

    plots_path = None
    if config.get("plots_outpath"):
        import seq_report
        plots_path = seq_report.generate_counts_report(
            rows, aggregator, config["plots_outpath"])

    log_summary(aggregator, rows, time.time() - t0)
    return {
        "rows":        rows,
        "counts_df":   counts_df,
        "aggregator":  aggregator,
        "counts_path": counts_path,
        "hits_path":   hits_path,
        "plots_path":  plots_path,
    }


def log_summary(aggregator, rows, elapsed):
    total = rows[0].total_count if rows else 0
    logger.info("=" * 60)
    logger.info("  SUMMARY")
    logger.info("=" * 60)
    logger.info(f"  Models:                   {', '.join(aggregator.models)}")
    logger.info(f"  (batch, model) units:     {aggregator.n_batches:>10,}")
    logger.info(f"  Reads with any hit:       {len(aggregator):>10,}")
    logger.info(f"  Reads missing a model:    {aggregator.n_incomplete:>10,}")
    logger.info(f"  Reads counted:            {total:>10,}")
    logger.info(f"  Unique combinations:      {len(rows):>10,}")
    if aggregator.duplicates:
        logger.info(f"  Duplicate model hits:     {aggregator.duplicates:>10,}")
    for model, lengths in aggregator.sequence_lengths().items():
        if lengths:
            logger.info(f"  {model} median length:    {np.median(lengths):>10.1f} aa")
    logger.info(f"  Processing time:          {elapsed:>10.1f}s")
    for r in rows[:5]:
        combo = " | ".join(r.sequences.values())
        logger.info(f"    {r.count:>8,}  {r.frequency:6.2%}  {combo}")
    logger.info("=" * 60)


# ─────────────────────────────────────────────────────────────────────────────
# CLI
# ─────────────────────────────────────────────────────────────────────────────

def _parse_input_pair(value):
    if ":" not in value:
        raise argparse.ArgumentTypeError(f"--input must be FASTQ:MODEL, got: {value}")
    fastq_path, model_path = value.rsplit(":", 1)
    return {"fastq_path": fastq_path, "model_path": model_path}


def parse_args(argv=None):
    p = argparse.ArgumentParser(
        description="Count unique cross-model combinations of HMM-trimmed "
                    "sequences in FASTQ reads.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--config", help="JSON config file")
    p.add_argument("--input", action="append", type=_parse_input_pair,
                   metavar="FASTQ:MODEL",
                   help="FASTQ file and HMM model to search it with. "
                        "Can be specified multiple times; replaces "
                        "input_pairs from --config.")
    p.add_argument("--counts-output", dest="counts_outpath",
                   help="Output CSV of combination counts")
    p.add_argument("--hits-output", dest="hits_outpath",
                   help="Optional CSV with the selected hit of every read")
    p.add_argument("--plots-output", dest="plots_outpath",
                   help="Optional PDF report")
    p.add_argument("--min-quality", type=float,
                   help="Minimum average read quality for seqkit seq")
    p.add_argument("--hmm-coverage", type=float,
                   help="Minimum fraction of the HMM a hit must span")
    p.add_argument("--reads-per-batch", type=int,
                   help="Reads per seqkit split batch")
    p.add_argument("--extractor", choices=EXTRACTORS,
                   help="Cut trimmed sequences with seqkit subseq or in Python")
    p.add_argument("--cpu", type=int, help="Threads passed to hmmsearch --cpu")
    p.add_argument("--keep-temp", action="store_true", default=None,
                   help="Keep intermediate files")
    p.add_argument("--no-progress", action="store_true",
                   help="Disable the progress bar")
    p.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                   default="INFO", help="Logging level")
    return p.parse_args(argv)


def main(argv=None):
    logging.basicConfig(level=logging.INFO,
                        format='%(asctime)s - %(levelname)s - %(message)s')
    args = parse_args(argv)
    logging.getLogger().setLevel(getattr(logging, args.log_level))

    overrides = {
        "counts_outpath":  args.counts_outpath,
        "hits_outpath":    args.hits_outpath,
        "plots_outpath":   args.plots_outpath,
        "min_quality":     args.min_quality,
        "hmm_coverage":    args.hmm_coverage,
        "reads_per_batch": args.reads_per_batch,
        "extractor":       args.extractor,
        "cpu":             args.cpu,
        "keep_temp":       args.keep_temp,
        "input_pairs":     args.input,
    }
    try:
        config = load_counts_config(args.config, overrides)
    except (FileNotFoundError, ValueError) as exc:
        sys.exit(f"ERROR: {exc}")

    logger.info(f"Input pairs: {len(config['input_pairs'])}")
    for pair in config["input_pairs"]:
        logger.info(f"  {pair['fastq_path']}  ×  {pair['model_path']}")

    try:
        result = run_pipeline(config, progress=not args.no_progress)
    except (ToolError, FileNotFoundError, ValueError) as exc:
        sys.exit(f"ERROR: {exc}")

    logger.info(f"Pipeline completed! Counts saved to: {result['counts_path']}")


if __name__ == "__main__":
    main()
