#!/usr/bin/env python3
"""
seq_match.py

Look up query sequences in a counts table by Levenshtein distance.

Every query is compared against every row of the reference table; rows
beyond the optional distance cap are dropped and the rest are ranked by
distance.  Equal distances keep the row order of the reference table.

Usage example
─────────────
    python3 seq_match.py ngs_counts.csv --column VH \\
        --query EVQLVESGGGLVQ --query QVQLQESGPGLV \\
        [--max-dist 3] [--processes 4] [--output matches.csv]

Requirements: Levenshtein, pandas, tqdm
"""

import argparse
import logging
import math
import sys
from dataclasses import dataclass
from multiprocessing import Pool
from typing import Dict, List, Optional, Sequence, Tuple

import Levenshtein
import pandas as pd
from tqdm import tqdm

logger = logging.getLogger(__name__)

MATCH_COLUMNS = ["Original_Query_Seq", "Trimmed_Query_Seq", "Matched_Seq",
                 "Levenshtein_Dist", "Count", "Total_Count", "Frequency"]

_EMPTY_VALUES = {"", "NA"}


@dataclass(frozen=True)
class MatchCandidate:
    original_query: str
    trimmed_query: str
    matched_sequence: str
    edit_distance: int
    count: float
    total_count: float
    frequency: float

    def as_row(self):
        return dict(zip(MATCH_COLUMNS, (
            self.original_query, self.trimmed_query, self.matched_sequence,
            self.edit_distance, self.count, self.total_count, self.frequency)))


def edit_distance(a: str, b: str, max_distance: Optional[int] = None) -> int:
    """
    Levenshtein distance (unit cost insert/delete/substitute).

    With ``max_distance`` set the computation may stop early; any
    distance above the cap is reported as ``max_distance + 1``.
    """
    if max_distance is None:
        return Levenshtein.distance(a, b)
    return Levenshtein.distance(a, b, score_cutoff=max_distance)


def _to_number(value):
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


# ─────────────────────────────────────────────────────────────────────────────
# Reference table
# ─────────────────────────────────────────────────────────────────────────────

def load_reference_table(csv_path) -> List[Dict[str, str]]:
    """Read a counts table into a list of row dicts, in file order."""
    df = pd.read_csv(csv_path, dtype=str, keep_default_na=False)
    logger.info(f"Loaded {len(df):,} reference rows from {csv_path}")
    return df.to_dict("records")


def usable_reference_rows(rows, sequence_column) -> List[Tuple[str, dict]]:
    """
    Return (sequence, row) pairs for rows with a value in ``sequence_column``.

    Rows missing the column or holding an empty/NA value are skipped with a
    single warning.
    """
    usable = []
    n_missing = 0
    for row in rows:
        value = row.get(sequence_column)
        if value is None or (isinstance(value, float) and math.isnan(value)):
            n_missing += 1
            continue
        value = str(value).strip()
        if value in _EMPTY_VALUES:
            n_missing += 1
            continue
        usable.append((value, row))
    if n_missing:
        logger.warning(f"Skipping {n_missing:,} reference rows: missing "
                       f"column \"{sequence_column}\"")
    return usable


# ─────────────────────────────────────────────────────────────────────────────
# Matching
# ─────────────────────────────────────────────────────────────────────────────

def _scan(query: Tuple[str, str], references: Sequence[Tuple[str, dict]],
          max_distance: Optional[int]) -> List[MatchCandidate]:
    original, trimmed = query
    matches = []
    for seq, row in references:
        dist = edit_distance(trimmed, seq, max_distance)
        if max_distance is not None and dist > max_distance:
            continue
        matches.append(MatchCandidate(
            original_query=original,
            trimmed_query=trimmed,
            matched_sequence=seq,
            edit_distance=dist,
            count=_to_number(row.get("Count")),
            total_count=_to_number(row.get("Total_Count")),
            frequency=_to_number(row.get("Frequency")),
        ))
    # list.sort is stable: ties stay in reference order
    matches.sort(key=lambda m: m.edit_distance)
    return matches


# set once per pool worker by _init_worker
_worker_references = None
_worker_max_distance = None


def _init_worker(references, max_distance):
    global _worker_references, _worker_max_distance
    _worker_references = references
    _worker_max_distance = max_distance


def _scan_in_worker(query):
    return _scan(query, _worker_references, _worker_max_distance)


def match_query(trimmed_query, reference_rows, sequence_column,
                max_distance=None, original_query=None) -> List[MatchCandidate]:
    references = usable_reference_rows(reference_rows, sequence_column)
    original = trimmed_query if original_query is None else original_query
    return _scan((original, trimmed_query), references, max_distance)


def find_closest_matches(queries, reference_rows, sequence_column,
                         max_distance=None, processes=1, progress=False):
    """
    Match every query against the reference rows.

    ``queries`` is a list of (original, trimmed) pairs, or plain strings
    when no untrimmed form exists.  Per-query scans run in a process pool
    when ``processes > 1``.

    Returns one candidate list per query, in query order.
    """
    if max_distance is not None and max_distance < 0:
        raise ValueError(f"max_distance must be non-negative, got {max_distance}")
    pairs = [(q, q) if isinstance(q, str) else tuple(q) for q in queries]
    references = usable_reference_rows(reference_rows, sequence_column)

    if processes > 1 and len(pairs) > 1:
        # references go to each worker once, not with every query
        chunksize = max(1, len(pairs) // (processes * 4))
        with Pool(processes=processes, initializer=_init_worker,
                  initargs=(references, max_distance)) as pool:
            results = list(tqdm(pool.imap(_scan_in_worker, pairs, chunksize),
                                total=len(pairs), desc="Matching queries",
                                disable=not progress))
    else:
        results = [_scan(p, references, max_distance)
                   for p in tqdm(pairs, desc="Matching queries",
                                 disable=not progress)]

    for (_, trimmed), found in zip(pairs, results):
        logger.debug(f"{len(found):,} matches for query {trimmed}")
    return results


def matches_frame(matches) -> pd.DataFrame:
    rows = [m.as_row() for found in matches for m in found]
    return pd.DataFrame(rows, columns=MATCH_COLUMNS)


def write_matches_table(matches, output_path) -> pd.DataFrame:
    df = matches_frame(matches)
    if df.empty:
        logger.warning(f"No matches to write to {output_path}")
    df.to_csv(output_path, index=False, na_rep="NA")
    logger.info(f"Matches ({len(df):,} rows) written to {output_path}")
    return df


# ─────────────────────────────────────────────────────────────────────────────
# CLI
# ─────────────────────────────────────────────────────────────────────────────

def parse_args(argv=None):
    p = argparse.ArgumentParser(
        description="Rank rows of a counts table by Levenshtein distance "
                    "to already-trimmed query sequences.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("counts_csv", help="Counts table written by hmm_counts.py")
    p.add_argument("--column", required=True,
                   help="Table column holding the sequences to compare")
    p.add_argument("--query", action="append", required=True,
                   help="Query sequence; may be given multiple times")
    p.add_argument("--max-dist", type=int, default=None,
                   help="Drop matches further than this edit distance")
    p.add_argument("--processes", type=int, default=1,
                   help="Worker processes for the per-query scan")
    p.add_argument("--output", default="matches.csv",
                   help="Output CSV file")
    return p.parse_args(argv)


def main(argv=None):
    logging.basicConfig(level=logging.INFO,
                        format='%(asctime)s - %(levelname)s - %(message)s')
    args = parse_args(argv)
    try:
        rows = load_reference_table(args.counts_csv)
        matches = find_closest_matches(args.query, rows, args.column,
                                       max_distance=args.max_dist,
                                       processes=args.processes)
    except (FileNotFoundError, ValueError) as exc:
        sys.exit(f"ERROR: {exc}")
    write_matches_table(matches, args.output)


if __name__ == "__main__":
    main()
