"""
pipeline_config.py

JSON configuration for hmm_counts.py and hmm_matches.py.

Counts config
─────────────
    {
      "counts_outpath": "ngs_counts.csv",
      "min_quality": 20,
      "hmm_coverage": 0.5,
      "input_pairs": [
        {"fastq_path": "run1.fastq.gz", "model_path": "models/VH.hmm"},
        {"fastq_path": "run1.fastq.gz", "model_path": "models/VL.hmm"}
      ]
    }

Matches config
──────────────
    {
      "max_LD": 3,
      "input_list": [
        {"query_path": "queries.fasta", "model_path": "models/VH.hmm",
         "csv_path": "ngs_counts.csv", "output_path": "VH_matches.csv"}
      ]
    }

Keys not listed in the defaults below are rejected so typos surface early.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

EXTRACTORS = ("seqkit", "biopython")

COUNTS_DEFAULTS: Dict[str, Any] = {
    "counts_outpath": "ngs_counts.csv",
    "hits_outpath": None,
    "plots_outpath": None,
    "min_quality": 20,
    "hmm_coverage": 0.0,
    "reads_per_batch": 500_000,
    "extractor": "seqkit",
    "cpu": None,
    "keep_temp": False,
    "input_pairs": [],
}

MATCHES_DEFAULTS: Dict[str, Any] = {
    "max_LD": None,
    "evalue": 1e-5,
    "processes": 1,
    "extractor": "seqkit",
    "cpu": None,
    "keep_temp": False,
    "input_list": [],
}


def read_config_file(config_path) -> Dict[str, Any]:
    if not Path(config_path).exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    with open(config_path) as fh:
        try:
            config = json.load(fh)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {config_path}: {e}")
    if not isinstance(config, dict):
        raise ValueError(f"{config_path}: top level must be a JSON object")
    return config


def _merge(defaults, config, overrides):
    unknown = set(config) - set(defaults)
    if unknown:
        raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")
    merged = dict(defaults)
    merged.update(config)
    for key, value in (overrides or {}).items():
        if value is not None:
            merged[key] = value
    return merged


def _check_extractor(config):
    if config["extractor"] not in EXTRACTORS:
        raise ValueError(f"extractor must be one of {EXTRACTORS}, "
                         f"got {config['extractor']!r}")


def validate_counts_config(config: Dict[str, Any]) -> None:
    """Raise ValueError/FileNotFoundError for an unusable counts config."""
    pairs = config["input_pairs"]
    if not pairs:
        raise ValueError("input_pairs must list at least one fastq/model pair")
    for i, pair in enumerate(pairs, 1):
        for key in ("fastq_path", "model_path"):
            if key not in pair:
                raise ValueError(f"input_pairs[{i}] is missing '{key}'")
            if not Path(pair[key]).exists():
                raise FileNotFoundError(f"input_pairs[{i}] {key} not found: {pair[key]}")
    if not 0 <= config["hmm_coverage"] <= 1:
        raise ValueError(f"hmm_coverage must be between 0 and 1, "
                         f"got {config['hmm_coverage']}")
    if config["min_quality"] < 0:
        raise ValueError("min_quality must be non-negative")
    if config["reads_per_batch"] < 1:
        raise ValueError("reads_per_batch must be at least 1")
    _check_extractor(config)
    if config["min_quality"] > 40:
        logger.warning(f"min_quality {config['min_quality']} is very strict; "
                       f"few reads may pass")


def validate_matches_config(config: Dict[str, Any]) -> None:
    """Raise ValueError/FileNotFoundError for an unusable matches config."""
    entries = config["input_list"]
    if not entries:
        raise ValueError("input_list must contain at least one entry")
    for i, entry in enumerate(entries, 1):
        for key in ("query_path", "model_path", "csv_path", "output_path"):
            if key not in entry:
                raise ValueError(f"input_list[{i}] is missing '{key}'")
        for key in ("model_path", "csv_path"):
            if not Path(entry[key]).exists():
                raise FileNotFoundError(f"input_list[{i}] {key} not found: {entry[key]}")
    if config["max_LD"] is not None and config["max_LD"] < 0:
        raise ValueError("max_LD must be non-negative")
    if config["processes"] < 1:
        raise ValueError("processes must be at least 1")
    _check_extractor(config)


def load_counts_config(config_path=None, overrides: Optional[dict] = None):
    config = read_config_file(config_path) if config_path else {}
    config = _merge(COUNTS_DEFAULTS, config, overrides)
    validate_counts_config(config)
    return config


def load_matches_config(config_path=None, overrides: Optional[dict] = None):
    config = read_config_file(config_path) if config_path else {}
    config = _merge(MATCHES_DEFAULTS, config, overrides)
    validate_matches_config(config)
    return config
