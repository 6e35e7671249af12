import logging
import os
import shutil
import subprocess
import tempfile
import unittest
from unittest import mock

from Bio import SeqIO
from Bio.Seq import Seq
from Bio.SeqRecord import SeqRecord

import hmm_tools
from domtbl_hits import Region
from hmm_tools import EmptyTranslationError, ToolError

logging.getLogger('hmm_tools').setLevel(logging.CRITICAL)


class TestNaming(unittest.TestCase):

    def test_model_name(self):
        self.assertEqual(hmm_tools.model_name_from_path("models/VH.hmm"), "VH")
        self.assertEqual(hmm_tools.model_name_from_path("/x/y/Nb.v2.hmm"), "Nb.v2")

    def test_batch_name(self):
        self.assertEqual(hmm_tools.batch_name_from_path("run/x.part_001.fastq.gz"),
                         "x.part_001")
        self.assertEqual(hmm_tools.batch_name_from_path("reads.fq"), "reads")
        self.assertEqual(hmm_tools.batch_name_from_path("reads.txt"), "reads")

    def test_subseq_target_id(self):
        self.assertEqual(hmm_tools.subseq_target_id("read1_frame=2_5-40:."),
                         "read1_frame=2")
        self.assertEqual(hmm_tools.subseq_target_id("r_9_1-3:+"), "r_9")
        self.assertEqual(hmm_tools.subseq_target_id("plain"), "plain")


class TestRunTool(unittest.TestCase):

    def test_missing_executable(self):
        with mock.patch("hmm_tools.shutil.which", return_value=None):
            with self.assertRaises(ToolError) as cm:
                hmm_tools.run_tool(["hmmsearch", "--help"])
        self.assertIn("hmmsearch", str(cm.exception))

    def test_nonzero_exit_reports_stderr_tail(self):
        failed = subprocess.CompletedProcess(
            ["seqkit"], 2, stdout="",
            stderr="\n".join(f"line {i}" for i in range(30)))
        with mock.patch("hmm_tools.shutil.which", return_value="/usr/bin/seqkit"), \
                mock.patch("hmm_tools.subprocess.run", return_value=failed):
            with self.assertRaises(ToolError) as cm:
                hmm_tools.run_tool(["seqkit", "stats", "x y.fq"])
        msg = str(cm.exception)
        self.assertIn("exited with code 2", msg)
        self.assertIn("seqkit stats 'x y.fq'", msg)
        self.assertIn("line 29", msg)
        self.assertNotIn("line 5\n", msg)

    def test_command_arguments_stringified(self):
        ok = subprocess.CompletedProcess([], 0, stdout="", stderr="")
        with mock.patch("hmm_tools.shutil.which", return_value="/bin/hmmsearch"), \
                mock.patch("hmm_tools.subprocess.run", return_value=ok) as run:
            hmm_tools.run_hmmsearch("m.hmm", "in.fasta", "out.tbl", "out.txt",
                                    evalue=1e-5, cpu=4)
        cmd = run.call_args[0][0]
        self.assertEqual(cmd, ["hmmsearch", "-E", "1e-05", "--cpu", "4",
                               "-o", "out.txt", "--domtblout", "out.tbl",
                               "m.hmm", "in.fasta"])


class TestSeqkitWrappers(unittest.TestCase):

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_empty_translation(self):
        out = os.path.join(self.test_dir, "t.fasta")

        def fake_run(cmd):
            target = cmd[cmd.index("-o") + 1]
            open(target, "w").close()

        with mock.patch("hmm_tools.run_tool", side_effect=fake_run):
            with self.assertRaises(EmptyTranslationError) as cm:
                hmm_tools.seqkit_translate("in.fastq", 30, out)
        self.assertIn("min_quality", str(cm.exception))
        self.assertFalse(os.path.exists(out + ".filtered.fastq"))

    def test_split_lists_batches(self):
        out_dir = os.path.join(self.test_dir, "split")

        def fake_run(cmd):
            for name in ["r.part_002.fastq.gz", "r.part_001.fastq.gz", "notes.txt"]:
                open(os.path.join(out_dir, name), "w").close()

        with mock.patch("hmm_tools.run_tool", side_effect=fake_run):
            batches = hmm_tools.seqkit_split("r.fastq.gz", out_dir, 10)
        self.assertEqual([os.path.basename(b) for b in batches],
                         ["r.part_001.fastq.gz", "r.part_002.fastq.gz"])

    def test_split_without_output(self):
        with mock.patch("hmm_tools.run_tool"):
            with self.assertRaises(ToolError):
                hmm_tools.seqkit_split("r.fastq", os.path.join(self.test_dir, "s"))


class TestFasta(unittest.TestCase):

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.fasta = os.path.join(self.test_dir, "translated.fasta")
        records = [
            SeqRecord(Seq("MKEVQLVESGGGL"), id="r1_frame=1", description=""),
            SeqRecord(Seq("XXXXXXXX"), id="r1_frame=-1", description=""),
            SeqRecord(Seq("MAQVQLQESG"), id="r2_frame=3", description=""),
        ]
        SeqIO.write(records, self.fasta, "fasta")

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_extract_regions(self):
        regions = [Region("r2_frame=3", 2, 8, 10.0),
                   Region("r1_frame=1", 2, 7, 20.0),
                   Region("missing", 0, 3, 1.0)]
        cut = hmm_tools.extract_regions(self.fasta, regions)
        self.assertEqual(list(cut.items()),
                         [("r2_frame=3", "QVQLQE"), ("r1_frame=1", "EVQLV")])
        for r in regions[:2]:
            self.assertEqual(len(cut[r.target_id]), r.end - r.start)

    def test_read_write_fasta(self):
        path = os.path.join(self.test_dir, "q.fasta")
        hmm_tools.write_fasta({"a": "ACD", "b": "EFG"}, path)
        self.assertEqual(dict(hmm_tools.read_fasta(path)), {"a": "ACD", "b": "EFG"})

    def test_read_subseq_fasta(self):
        path = os.path.join(self.test_dir, "sub.fasta")
        with open(path, "w") as fh:
            fh.write(">r1_frame=1_3-7:. sub\nEVQLV\n>r2_frame=3_3-8:.\nQVQLQE\n")
        self.assertEqual(dict(hmm_tools.read_subseq_fasta(path)),
                         {"r1_frame=1": "EVQLV", "r2_frame=3": "QVQLQE"})


if __name__ == '__main__':
    unittest.main()
