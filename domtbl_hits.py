#!/usr/bin/env python3
"""
domtbl_hits.py

Parse hmmsearch --domtblout output, keep the single best hit per read and
export the aligned target span as BED intervals.

Target names produced by six-frame translation carry a reading-frame
suffix (``read42_frame=-2``).  All frames of one read compete for the same
best hit, so grouping is done on the canonical read id with the suffix
removed.

Usage example
─────────────
    python3 domtbl_hits.py hits.domtblout --coverage 0.5 --output best.bed
"""

import argparse
import gzip
import logging
import math
import os
import re
import sys
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, TextIO, Union

logger = logging.getLogger(__name__)

MIN_DOMTBL_FIELDS = 23

# column indices in the domain table
COL_TARGET = 0
COL_QLEN = 5
COL_SEQ_EVALUE = 6
COL_SEQ_SCORE = 7
COL_DOM_SCORE = 13
COL_HMM_FROM = 15
COL_HMM_TO = 16
COL_ALI_FROM = 17
COL_ALI_TO = 18

SCORE_COLUMNS = {
    "sequence": COL_SEQ_SCORE,
    "domain": COL_DOM_SCORE,
}

_FRAME_RE = re.compile(r"_frame=-?\d+.*$")


@dataclass(frozen=True)
class HitRecord:
    target_id: str
    model_coverage_len: float
    score: float
    e_value: float
    hmm_from: float
    hmm_to: float
    ali_from: int
    ali_to: int

    @property
    def coverage(self) -> float:
        """Fraction of the profile spanned by this hit (NaN if unknown)."""
        span = self.hmm_to - self.hmm_from + 1
        if not self.model_coverage_len:
            return math.nan
        return span / self.model_coverage_len

    @property
    def frame(self) -> int:
        """Reading frame encoded in the target name, 0 when absent."""
        m = re.search(r"frame=(-?\d+)", self.target_id)
        return int(m.group(1)) if m else 0


@dataclass(frozen=True)
class SelectedHit:
    read_id: str
    hit: HitRecord


@dataclass(frozen=True)
class Region:
    target_id: str
    start: int
    end: int
    score: float


# ─────────────────────────────────────────────────────────────────────────────
# Parsing
# ─────────────────────────────────────────────────────────────────────────────

def _open(path):
    path = str(path)
    return gzip.open(path, "rt") if path.endswith(".gz") else open(path)


def _to_float(text: str) -> float:
    try:
        return float(text)
    except ValueError:
        return math.nan


def parse_domtbl_line(line: str, score_field: str = "domain") -> Optional[HitRecord]:
    """
    Parse one data line of a domain table.

    Returns None for comment, blank and malformed lines.  Score, E-value,
    model length and HMM span fall back to NaN when unparsable; the target
    coordinates must be integers.
    """
    if line.startswith("#") or not line.strip():
        return None
    cols = line.split()
    if len(cols) < MIN_DOMTBL_FIELDS:
        return None
    try:
        ali_from = int(cols[COL_ALI_FROM])
        ali_to = int(cols[COL_ALI_TO])
    except ValueError:
        return None
    return HitRecord(
        target_id=cols[COL_TARGET],
        model_coverage_len=_to_float(cols[COL_QLEN]),
        score=_to_float(cols[SCORE_COLUMNS[score_field]]),
        e_value=_to_float(cols[COL_SEQ_EVALUE]),
        hmm_from=_to_float(cols[COL_HMM_FROM]),
        hmm_to=_to_float(cols[COL_HMM_TO]),
        ali_from=ali_from,
        ali_to=ali_to,
    )


def iter_domtbl(source: Union[str, TextIO], score_field: str = "domain",
                stats: Optional[Counter] = None) -> Iterator[HitRecord]:
    """
    Yield HitRecord for every usable line of a domtblout file.

    ``source`` is a path (plain or .gz) or an open text handle.  Malformed
    lines are skipped; pass a Counter as ``stats`` to see how many.
    """
    if score_field not in SCORE_COLUMNS:
        raise ValueError(f"score_field must be one of {sorted(SCORE_COLUMNS)}, "
                         f"got {score_field!r}")
    if stats is None:
        stats = Counter()

    if isinstance(source, (str, os.PathLike)):
        with _open(source) as fh:
            yield from _iter_lines(fh, score_field, stats)
    else:
        yield from _iter_lines(source, score_field, stats)


def _iter_lines(fh, score_field, stats):
    for line in fh:
        stats["lines"] += 1
        if line.startswith("#") or not line.strip():
            stats["comments"] += 1
            continue
        record = parse_domtbl_line(line, score_field)
        if record is None:
            stats["malformed"] += 1
            continue
        stats["records"] += 1
        yield record


# ─────────────────────────────────────────────────────────────────────────────
# Best hit selection
# ─────────────────────────────────────────────────────────────────────────────

def canonical_read_id(target_id: str) -> str:
    """Strip the ``_frame=N`` translation suffix from a target name."""
    return _FRAME_RE.sub("", target_id).strip()


def passes_coverage(hit: HitRecord, min_coverage: Optional[float]) -> bool:
    if min_coverage is None:
        return True
    # NaN coverage compares False and is kept
    return not (hit.coverage < min_coverage)


def select_best_hits(records: Iterable[HitRecord],
                     min_coverage: Optional[float] = None) -> Dict[str, SelectedHit]:
    """
    Keep the highest-scoring hit for every canonical read id.

    Hits covering less than ``min_coverage`` of the profile are dropped
    before they can compete.  A later hit replaces the incumbent only with
    a strictly greater score, so ties keep the first record seen.  Reads
    whose hits were all filtered out are absent from the result.
    """
    best: Dict[str, SelectedHit] = {}
    n_filtered = 0
    for hit in records:
        if not passes_coverage(hit, min_coverage):
            n_filtered += 1
            continue
        read_id = canonical_read_id(hit.target_id)
        incumbent = best.get(read_id)
        if incumbent is None or hit.score > incumbent.hit.score:
            best[read_id] = SelectedHit(read_id, hit)
    if n_filtered:
        logger.debug(f"{n_filtered:,} hits below coverage {min_coverage}")
    return best


def best_hits_from_file(path, score_field="domain", min_coverage=None):
    """Parse a domtblout file and return (best_hits, parse_stats)."""
    stats = Counter()
    best = select_best_hits(iter_domtbl(path, score_field, stats), min_coverage)
    if stats["malformed"]:
        logger.info(f"Skipped {stats['malformed']:,} malformed lines in {path}")
    return best, stats


# ─────────────────────────────────────────────────────────────────────────────
# Region export
# ─────────────────────────────────────────────────────────────────────────────

def hit_to_region(selected: SelectedHit) -> Region:
    """Convert 1-based inclusive alignment coordinates to a BED interval."""
    hit = selected.hit
    return Region(hit.target_id, hit.ali_from - 1, hit.ali_to, hit.score)


def regions_from_hits(best: Dict[str, SelectedHit]) -> List[Region]:
    return [hit_to_region(sel) for sel in best.values()]


def _fmt_score(score):
    return "nan" if math.isnan(score) else f"{score:g}"


def write_bed(regions: Iterable[Region], bed_path) -> int:
    """Write regions as ``target\\tstart\\tend\\tscore``; returns rows written."""
    n = 0
    with open(bed_path, "w") as fh:
        for r in regions:
            fh.write(f"{r.target_id}\t{r.start}\t{r.end}\t{_fmt_score(r.score)}\n")
            n += 1
    return n


def read_bed(bed_path) -> List[Region]:
    regions = []
    with open(bed_path) as fh:
        for line in fh:
            cols = line.rstrip("\n").split("\t")
            if len(cols) < 3:
                continue
            score = _to_float(cols[3]) if len(cols) > 3 else math.nan
            regions.append(Region(cols[0], int(cols[1]), int(cols[2]), score))
    return regions


# ─────────────────────────────────────────────────────────────────────────────
# CLI
# ─────────────────────────────────────────────────────────────────────────────

def parse_args(argv=None):
    p = argparse.ArgumentParser(
        description="Select the best hmmsearch hit per read and write BED "
                    "intervals of the aligned target span.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("domtbl", help="hmmsearch --domtblout file (plain or .gz)")
    p.add_argument("--score-field", choices=sorted(SCORE_COLUMNS),
                   default="domain",
                   help="Rank hits by full-sequence or per-domain bit score")
    p.add_argument("--coverage", type=float, default=None,
                   help="Minimum fraction of the HMM an alignment must span")
    p.add_argument("--output", default="best_hits.bed",
                   help="Output BED file")
    return p.parse_args(argv)


def main(argv=None):
    logging.basicConfig(level=logging.INFO,
                        format='%(asctime)s - %(levelname)s - %(message)s')
    args = parse_args(argv)
    try:
        best, stats = best_hits_from_file(args.domtbl, args.score_field,
                                          args.coverage)
    except (FileNotFoundError, ValueError) as exc:
        sys.exit(f"ERROR: {exc}")
    n = write_bed(regions_from_hits(best), args.output)
    logger.info(f"{stats['records']:,} hits → {n:,} reads written to {args.output}")


if __name__ == "__main__":
    main()
