import logging
import os
import shutil
import tempfile
import unittest

import pandas as pd

import seq_report
from seq_combos import ModelSequenceAggregator, count_aggregator

logging.getLogger('seq_report').setLevel(logging.CRITICAL)


class TestReports(unittest.TestCase):

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_counts_report(self):
        agg = ModelSequenceAggregator()
        agg.add_batch("VH", "b1", {"r1": "EVQLV", "r2": "EVQLV", "r3": "QVQL"})
        agg.add_batch("VL", "b1", {"r1": "DIQMT", "r2": "DIQMS"})
        pdf = os.path.join(self.test_dir, "counts.pdf")
        seq_report.generate_counts_report(count_aggregator(agg), agg, pdf)
        self.assertGreater(os.path.getsize(pdf), 0)

    def test_counts_report_without_reads(self):
        agg = ModelSequenceAggregator()
        pdf = os.path.join(self.test_dir, "empty.pdf")
        seq_report.generate_counts_report((), agg, pdf)
        self.assertTrue(os.path.exists(pdf))

    def test_matches_report(self):
        df = pd.DataFrame({"Trimmed_Query_Seq": ["ACD", "ACD", "WWW"],
                           "Levenshtein_Dist": [0, 1, 3]})
        pdf = os.path.join(self.test_dir, "matches.pdf")
        seq_report.generate_matches_report(df, pdf)
        self.assertGreater(os.path.getsize(pdf), 0)

    def test_matches_report_empty(self):
        pdf = os.path.join(self.test_dir, "none.pdf")
        seq_report.generate_matches_report(
            pd.DataFrame(columns=["Trimmed_Query_Seq", "Levenshtein_Dist"]), pdf)
        self.assertTrue(os.path.exists(pdf))


if __name__ == '__main__':
    unittest.main()
