#!/usr/bin/env python3
"""
hmm_tools.py

Thin wrappers around the external programs the pipelines drive
(seqkit and hmmsearch) plus FASTA helpers for reading their output.

All programs are run without a shell.  A non-zero exit raises ToolError
with the command line and the tail of stderr so the caller can report
which batch failed and why.

Requirements: seqkit and hmmsearch (HMMER 3) on PATH, biopython
"""

import gzip
import logging
import os
import re
import shlex
import shutil
import subprocess
from collections import OrderedDict, defaultdict
from pathlib import Path

from Bio import SeqIO

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 20

_FASTQ_SUFFIXES = (".fastq.gz", ".fq.gz", ".fastq", ".fq")
_SUBSEQ_RE = re.compile(r"^(?P<target>.+)_(?P<start>\d+)-(?P<end>\d+):[+\-.]$")


class ToolError(RuntimeError):
    """An external program could not be started or exited non-zero."""


class EmptyTranslationError(ToolError):
    """Quality filtering + translation produced no sequences."""


# ─────────────────────────────────────────────────────────────────────────────
# Naming helpers
# ─────────────────────────────────────────────────────────────────────────────

def model_name_from_path(model_path):
    """``models/VH.hmm`` → ``VH``."""
    return Path(model_path).stem


def batch_name_from_path(fastq_path):
    """Strip FASTQ (and gzip) suffixes from a file name."""
    name = Path(fastq_path).name
    for suffix in _FASTQ_SUFFIXES:
        if name.endswith(suffix):
            return name[:-len(suffix)]
    return Path(name).stem


def _open(path):
    path = str(path)
    return gzip.open(path, "rt") if path.endswith(".gz") else open(path)


# ─────────────────────────────────────────────────────────────────────────────
# Process runner
# ─────────────────────────────────────────────────────────────────────────────

def run_tool(cmd):
    """Run ``cmd`` to completion, raising ToolError on failure."""
    cmd = [str(c) for c in cmd]
    if shutil.which(cmd[0]) is None:
        raise ToolError(f"Executable {cmd[0]!r} not found on PATH")
    logger.debug(f"Running: {shlex.join(cmd)}")
    try:
        proc = subprocess.run(cmd, stdout=subprocess.PIPE,
                              stderr=subprocess.PIPE, text=True)
    except OSError as e:
        raise ToolError(f"Failed to start {cmd[0]}: {e}") from e
    if proc.returncode != 0:
        tail = "\n".join(proc.stderr.splitlines()[-STDERR_TAIL_LINES:])
        raise ToolError(
            f"{cmd[0]} exited with code {proc.returncode}.\n"
            f"Command: {shlex.join(cmd)}\n"
            f"stderr:\n{tail or '<empty>'}"
        )
    return proc


# ─────────────────────────────────────────────────────────────────────────────
# seqkit
# ─────────────────────────────────────────────────────────────────────────────

def seqkit_split(fastq_path, out_dir, reads_per_batch=500_000, exe="seqkit"):
    """Split a FASTQ into batches; return the batch paths in name order."""
    os.makedirs(out_dir, exist_ok=True)
    run_tool([exe, "split", fastq_path, "-s", reads_per_batch, "-O", out_dir])
    batches = sorted(str(p) for p in Path(out_dir).iterdir()
                     if p.name.endswith(_FASTQ_SUFFIXES))
    if not batches:
        raise ToolError(f"No FASTQ files found in {out_dir}")
    return batches


def seqkit_translate(fastq_path, min_quality, out_fasta, exe="seqkit"):
    """Quality-filter reads and translate them in all six frames."""
    filtered = f"{out_fasta}.filtered.fastq"
    try:
        run_tool([exe, "seq", "--min-qual", min_quality, fastq_path,
                  "-o", filtered])
        run_tool([exe, "translate", "-f", "6", "-F", filtered,
                  "-o", out_fasta])
    finally:
        if os.path.exists(filtered):
            os.remove(filtered)
    if not os.path.exists(out_fasta) or os.path.getsize(out_fasta) == 0:
        raise EmptyTranslationError(
            f"No sequences found in {out_fasta}. "
            f"Try lowering the 'min_quality' threshold (currently {min_quality})!")
    return out_fasta


def seqkit_subseq(fasta_path, bed_path, out_fasta, exe="seqkit"):
    """Cut BED intervals out of a FASTA file with ``seqkit subseq``."""
    run_tool([exe, "subseq", "--bed", bed_path, fasta_path, "-o", out_fasta])
    return out_fasta


def subseq_target_id(header_id):
    """Recover the source record id from a seqkit subseq id (``x_3-40:.``)."""
    m = _SUBSEQ_RE.match(header_id)
    return m.group("target") if m else header_id


def read_subseq_fasta(path):
    """Read seqkit subseq output keyed by source target id."""
    return OrderedDict((subseq_target_id(rid), seq)
                       for rid, seq in read_fasta(path).items())


# ─────────────────────────────────────────────────────────────────────────────
# hmmsearch
# ─────────────────────────────────────────────────────────────────────────────

def run_hmmsearch(model_path, fasta_path, domtbl_path, stdout_path,
                  evalue=None, cpu=None, exe="hmmsearch"):
    cmd = [exe]
    if evalue is not None:
        cmd += ["-E", evalue]
    if cpu is not None:
        cmd += ["--cpu", cpu]
    cmd += ["-o", stdout_path, "--domtblout", domtbl_path,
            model_path, fasta_path]
    run_tool(cmd)
    return domtbl_path


# ─────────────────────────────────────────────────────────────────────────────
# FASTA I/O and in-process extraction
# ─────────────────────────────────────────────────────────────────────────────

def read_fasta(path):
    """Return an ordered {record_id: sequence} dict."""
    records = OrderedDict()
    with _open(path) as handle:
        for record in SeqIO.parse(handle, "fasta"):
            records[record.id] = str(record.seq)
    return records


def write_fasta(records, path):
    """Write ``{id: sequence}`` as unwrapped FASTA."""
    with open(path, "w") as fh:
        for rid, seq in records.items():
            fh.write(f">{rid}\n{seq}\n")
    return path


def extract_regions(fasta_path, regions):
    """
    Cut each region out of the matching FASTA record.

    Returns {target_id: subsequence} in region order; regions whose
    target is absent from the FASTA are left out.
    """
    wanted = defaultdict(list)
    for r in regions:
        wanted[r.target_id].append(r)
    found = {}
    with _open(fasta_path) as handle:
        for record in SeqIO.parse(handle, "fasta"):
            for r in wanted.get(record.id, ()):
                found[r.target_id] = str(record.seq[r.start:r.end])
    missing = len(wanted) - len(found)
    if missing:
        logger.warning(f"{missing:,} regions had no matching record in {fasta_path}")
    return OrderedDict((r.target_id, found[r.target_id])
                       for r in regions if r.target_id in found)
