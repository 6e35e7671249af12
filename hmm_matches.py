#!/usr/bin/env python3
"""
hmm_matches.py

Find the closest sequences in a counts table for a set of query proteins.

Each query is searched with the HMM model, trimmed to its best-scoring
alignment, and compared by Levenshtein distance with the column of the
counts table named after the model (``models/VH.hmm`` → column ``VH``).

Usage example
─────────────
    python3 hmm_matches.py --config matches_config.json

    python3 hmm_matches.py \\
        --query queries.fasta --model models/VH.hmm \\
        --counts ngs_counts.csv --output VH_matches.csv [--max-ld 3]

A query that is not a FASTA file path is taken as a literal sequence.

Requirements: hmmsearch, seqkit (unless --extractor biopython), biopython,
pandas, Levenshtein, tqdm
"""

import argparse
import logging
import os
import shutil
import sys
import tempfile
from pathlib import Path

import hmm_tools
from domtbl_hits import best_hits_from_file, canonical_read_id
from hmm_counts import extract_trimmed
from hmm_tools import ToolError
from pipeline_config import EXTRACTORS, load_matches_config
from seq_match import (find_closest_matches, load_reference_table,
                       write_matches_table)

logger = logging.getLogger(__name__)

FASTA_SUFFIXES = (".fa", ".fasta", ".faa", ".fna")


def is_fasta_file(path):
    """Check if a query looks like a FASTA path by extension (optionally .gz)."""
    name = Path(str(path)).name.lower()
    if name.endswith(".gz"):
        name = name[:-3]
    return Path(name).suffix in FASTA_SUFFIXES


def prepare_queries(query_path, work_dir):
    """
    Return (fasta_path, {query_id: untrimmed sequence}).

    Literal sequences are written to a one-record FASTA named ``query``.
    """
    if is_fasta_file(query_path):
        if not Path(query_path).exists():
            raise FileNotFoundError(f"Query FASTA not found: {query_path}")
        return query_path, hmm_tools.read_fasta(query_path)
    seq = str(query_path).strip().upper()
    if not seq:
        raise ValueError("Empty query sequence")
    records = {"query": seq}
    fasta_path = os.path.join(work_dir, "query.fasta")
    hmm_tools.write_fasta(records, fasta_path)
    return fasta_path, records


def trim_queries(query_fasta, model_path, work_prefix, evalue=1e-5,
                 extractor="seqkit", cpu=None):
    """Search queries with the model and return {query_id: trimmed sequence}.

    Queries are ranked on the full-sequence score with no HMM coverage
    filter.
    """
    domtbl_path = f"{work_prefix}.domtblout"
    hmm_tools.run_hmmsearch(model_path, query_fasta, domtbl_path,
                            f"{work_prefix}.stdout", evalue=evalue, cpu=cpu)
    best, _ = best_hits_from_file(domtbl_path, score_field="sequence")
    return extract_trimmed(query_fasta, best, work_prefix, extractor)


def match_entry(entry, config, work_dir, progress=False):
    """Run one input_list entry; returns the matches DataFrame."""
    model_name = hmm_tools.model_name_from_path(entry["model_path"])
    prefix = os.path.join(work_dir, model_name)
    query_fasta, originals = prepare_queries(entry["query_path"], work_dir)
    logger.info(f"Searching {len(originals):,} queries with {model_name} …")

    trimmed = trim_queries(query_fasta, entry["model_path"], prefix,
                           evalue=config["evalue"],
                           extractor=config["extractor"], cpu=config.get("cpu"))

    pairs = []
    for qid, original in originals.items():
        key = canonical_read_id(qid)
        if key not in trimmed:
            logger.warning(f"Query {qid} has no {model_name} hit - no matches reported")
            continue
        pairs.append((original, trimmed[key]))

    rows = load_reference_table(entry["csv_path"])
    matches = find_closest_matches(pairs, rows, model_name,
                                   max_distance=config["max_LD"],
                                   processes=config["processes"],
                                   progress=progress)
    for (_, query), found in zip(pairs, matches):
        best = found[0].edit_distance if found else "NA"
        logger.info(f"  {query[:40]:40s}  {len(found):>6,} matches  best={best}")

    df = write_matches_table(matches, entry["output_path"])
    if entry.get("plots_path"):
        import seq_report
        seq_report.generate_matches_report(df, entry["plots_path"])
    return df


def run_pipeline(config, progress=True):
    """Run every input_list entry of a validated matches config.

    Returns a list of (output_path, DataFrame) in input order.
    """
    if config["extractor"] not in EXTRACTORS:
        raise ValueError(f"Unknown extractor {config['extractor']!r}")
    results = []
    work_root = tempfile.mkdtemp(prefix="hmm_matches_")
    try:
        for i, entry in enumerate(config["input_list"], 1):
            work_dir = os.path.join(work_root, f"entry_{i}")
            os.makedirs(work_dir)
            try:
                df = match_entry(entry, config, work_dir, progress=progress)
            except (ToolError, OSError) as e:
                raise ToolError(f"input_list[{i}] ({entry['query_path']}): {e}") from e
            results.append((entry["output_path"], df))
    finally:
        if config.get("keep_temp"):
            logger.info(f"Intermediate files kept in {work_root}")
        else:
            shutil.rmtree(work_root, ignore_errors=True)
    logger.info("Matching pipeline complete!")
    return results


# ─────────────────────────────────────────────────────────────────────────────
# CLI
# ─────────────────────────────────────────────────────────────────────────────

def parse_args(argv=None):
    p = argparse.ArgumentParser(
        description="Trim query proteins with an HMM and find their closest "
                    "sequences in a counts table.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--config", help="JSON config file")
    p.add_argument("--query", help="Query FASTA or a literal sequence")
    p.add_argument("--model", help="HMM model; its name selects the table column")
    p.add_argument("--counts", help="Counts CSV written by hmm_counts.py")
    p.add_argument("--output", default="matches.csv", help="Output CSV")
    p.add_argument("--plots-output", help="Optional PDF of distance distributions")
    p.add_argument("--max-ld", dest="max_LD", type=int,
                   help="Maximum Levenshtein distance to report")
    p.add_argument("--evalue", type=float, help="hmmsearch -E threshold")
    p.add_argument("--processes", type=int,
                   help="Worker processes for matching")
    p.add_argument("--extractor", choices=EXTRACTORS,
                   help="Cut trimmed queries with seqkit subseq or in Python")
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

    input_list = None
    if args.query or args.model or args.counts:
        if not (args.query and args.model and args.counts):
            sys.exit("ERROR: --query, --model and --counts must be given together")
        input_list = [{
            "query_path":  args.query,
            "model_path":  args.model,
            "csv_path":    args.counts,
            "output_path": args.output,
            "plots_path":  args.plots_output,
        }]

    overrides = {
        "max_LD":     args.max_LD,
        "evalue":     args.evalue,
        "processes":  args.processes,
        "extractor":  args.extractor,
        "cpu":        args.cpu,
        "keep_temp":  args.keep_temp,
        "input_list": input_list,
    }
    try:
        config = load_matches_config(args.config, overrides)
        run_pipeline(config, progress=not args.no_progress)
    except (ToolError, FileNotFoundError, ValueError) as exc:
        sys.exit(f"ERROR: {exc}")


if __name__ == "__main__":
    main()
