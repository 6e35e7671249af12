#!/usr/bin/env python3
"""
seq_combos.py

Collect the trimmed sequence each HMM model picked out of every read and
count how often each full cross-model combination of sequences occurs.

A read only contributes a combination when every model seen during the
run found it.  Reads are keyed ``<read_id>|<batch>`` so identical read
names coming from different FASTQ batches stay apart.

Outputs
───────
  counts table : one column per model + Count, Total_Count, Frequency
  hits table   : one row per selected hit (optional)
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

import pandas as pd

logger = logging.getLogger(__name__)

READ_KEY_SEP = "|"
MISSING = "NA"
COUNT_COLUMNS = ["Count", "Total_Count", "Frequency"]


def make_read_key(read_id: str, batch_name: str) -> str:
    return f"{read_id}{READ_KEY_SEP}{batch_name}"


def split_read_key(read_key: str) -> str:
    """Drop the batch suffix from a read key."""
    return read_key.split(READ_KEY_SEP, 1)[0]


@dataclass(frozen=True)
class FrequencyRow:
    """One counted combination; ``sequences`` is a read-only {model: seq} view."""
    sequences: Mapping[str, str]
    count: int
    total_count: int
    frequency: float


class ModelSequenceAggregator:
    """
    Per-read store of {model: trimmed sequence} across all processed batches.

    Each (batch, model) unit is handed over in one ``add_batch`` call once
    it has been read completely, so a batch that fails half-way never
    leaves partial entries behind.
    """

    def __init__(self):
        self._reads: Dict[str, Dict[str, str]] = {}
        self._models: Set[str] = set()
        self.duplicates = 0
        self.n_batches = 0

    def __len__(self):
        return len(self._reads)

    @property
    def models(self) -> List[str]:
        """Every model observed so far, in sorted order."""
        return sorted(self._models)

    def add_batch(self, model_name: str, batch_name: str,
                  sequences: Mapping[str, str]) -> int:
        """
        Merge ``{read_id: sequence}`` found by ``model_name`` in ``batch_name``.

        The first sequence stored for a (read, model) pair is kept; repeats
        are counted in ``duplicates``.  Returns the number of new entries.
        """
        staged = {make_read_key(read_id, batch_name): seq
                  for read_id, seq in sequences.items() if seq}
        self._models.add(model_name)
        self.n_batches += 1

        added = 0
        for key, seq in staged.items():
            entry = self._reads.setdefault(key, {})
            if model_name in entry:
                self.duplicates += 1
                continue
            entry[model_name] = seq
            added += 1
        if len(staged) != added:
            logger.warning(f"{len(staged) - added:,} reads in {batch_name} already "
                           f"had a {model_name} sequence; keeping the first")
        return added

    def complete_combinations(self) -> Iterator[Tuple[str, Dict[str, str]]]:
        """Yield (read_id, {model: sequence}) for reads covered by every model."""
        models = self.models
        for key, entry in self._reads.items():
            if all(m in entry for m in models):
                yield split_read_key(key), {m: entry[m] for m in models}

    @property
    def n_incomplete(self) -> int:
        models = self._models
        return sum(1 for entry in self._reads.values()
                   if not models.issubset(entry))

    def coverage_sets(self) -> Dict[str, Set[str]]:
        """{model: set of read keys the model found}."""
        sets = {m: set() for m in self.models}
        for key, entry in self._reads.items():
            for m in entry:
                sets[m].add(key)
        return sets

    def sequence_lengths(self) -> Dict[str, List[int]]:
        lengths = {m: [] for m in self.models}
        for entry in self._reads.values():
            for m, seq in entry.items():
                lengths[m].append(len(seq))
        return lengths


# ─────────────────────────────────────────────────────────────────────────────
# Counting
# ─────────────────────────────────────────────────────────────────────────────

def combination_key(sequences: Mapping[str, str], models: Iterable[str]) -> str:
    return READ_KEY_SEP.join(f"{m}:{sequences[m]}" for m in models)


def count_combinations(combinations: Iterable[Mapping[str, str]],
                       models: List[str]) -> Tuple[FrequencyRow, ...]:
    """
    Count identical {model: sequence} combinations.

    Rows are ordered by descending count; equal counts keep the order in
    which the combination was first seen.  Frequencies are computed once
    from the final total.
    """
    counts: Dict[str, int] = {}
    first_seen: Dict[str, Mapping[str, str]] = {}
    for combo in combinations:
        key = combination_key(combo, models)
        if key not in counts:
            counts[key] = 0
            first_seen[key] = MappingProxyType(dict(combo))
        counts[key] += 1

    total = sum(counts.values())
    ranked = sorted(counts.items(), key=lambda kv: kv[1], reverse=True)
    return tuple(FrequencyRow(first_seen[key], n, total, n / total)
                 for key, n in ranked)


def count_aggregator(aggregator: ModelSequenceAggregator) -> Tuple[FrequencyRow, ...]:
    combos = (seqs for _, seqs in aggregator.complete_combinations())
    return count_combinations(combos, aggregator.models)


# ─────────────────────────────────────────────────────────────────────────────
# Tables
# ─────────────────────────────────────────────────────────────────────────────

def counts_frame(rows: Iterable[FrequencyRow],
                 models: Optional[List[str]] = None) -> pd.DataFrame:
    rows = list(rows)
    if models is None:
        models = sorted({m for r in rows for m in r.sequences})
    records = []
    for r in rows:
        rec = {m: r.sequences.get(m) for m in models}
        rec["Count"] = r.count
        rec["Total_Count"] = r.total_count
        rec["Frequency"] = r.frequency
        records.append(rec)
    return pd.DataFrame(records, columns=list(models) + COUNT_COLUMNS)


def write_counts_table(rows, models, output_path) -> pd.DataFrame:
    df = counts_frame(rows, models)
    if df.empty:
        logger.warning("No complete combinations to count")
    df.to_csv(output_path, index=False, na_rep=MISSING)
    logger.info(f"Counts table ({len(df):,} combinations) written to {output_path}")
    return df


HIT_COLUMNS = ["target_name", "score", "e_value", "ali_from", "ali_to",
               "start_pos", "FASTQ_filename", "model_name", "trimmed_seq",
               "seq_len"]


def hit_rows(best_hits, trimmed, batch_name, model_name):
    """Per-read detail rows for one (batch, model) unit."""
    rows = []
    for read_id, sel in best_hits.items():
        seq = trimmed.get(read_id)
        if seq is None:
            continue
        hit = sel.hit
        rows.append({
            "target_name":    read_id,
            "score":          hit.score,
            "e_value":        hit.e_value,
            "ali_from":       hit.ali_from,
            "ali_to":         hit.ali_to,
            "start_pos":      hit.frame,
            "FASTQ_filename": batch_name,
            "model_name":     model_name,
            "trimmed_seq":    seq,
            "seq_len":        len(seq),
        })
    return rows


def write_hits_table(rows, output_path) -> pd.DataFrame:
    df = pd.DataFrame(rows, columns=HIT_COLUMNS)
    df.to_csv(output_path, index=False, na_rep=MISSING)
    logger.info(f"Per-read hits ({len(df):,} rows) written to {output_path}")
    return df
