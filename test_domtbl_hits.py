import io
import logging
import math
import os
import shutil
import tempfile
import unittest
from collections import Counter

import domtbl_hits
from domtbl_hits import (HitRecord, Region, SelectedHit, best_hits_from_file,
                         canonical_read_id, hit_to_region, iter_domtbl,
                         parse_domtbl_line, read_bed, regions_from_hits,
                         select_best_hits, write_bed)

logging.getLogger('domtbl_hits').setLevel(logging.CRITICAL)


def domtbl_line(target, qlen=10, seq_score=50.0, dom_score=40.0, evalue="1e-10",
                hmm_from=1, hmm_to=10, ali_from=1, ali_to=10):
    fields = [target, "-", "300", "VH", "-", qlen, evalue, seq_score, "0.1",
              "1", "1", "1e-12", "1e-11", dom_score, "0.1", hmm_from, hmm_to,
              ali_from, ali_to, ali_from, ali_to, "0.95", "-"]
    return " ".join(str(f) for f in fields) + "\n"


def make_hit(target, score, hmm_from=1, hmm_to=10, qlen=10.0):
    return HitRecord(target_id=target, model_coverage_len=qlen, score=score,
                     e_value=1e-10, hmm_from=hmm_from, hmm_to=hmm_to,
                     ali_from=5, ali_to=20)


class TestParseLine(unittest.TestCase):

    def test_comment_and_blank(self):
        self.assertIsNone(parse_domtbl_line("# target name  accession\n"))
        self.assertIsNone(parse_domtbl_line("   \n"))

    def test_short_line_is_malformed(self):
        self.assertIsNone(parse_domtbl_line("read1 - 300 VH - 10 1e-5\n"))

    def test_score_columns(self):
        line = domtbl_line("read1_frame=2", seq_score=77.5, dom_score=31.25)
        self.assertEqual(parse_domtbl_line(line, "domain").score, 31.25)
        self.assertEqual(parse_domtbl_line(line, "sequence").score, 77.5)

    def test_fields(self):
        rec = parse_domtbl_line(domtbl_line("r_frame=-3", qlen=120, hmm_from=3,
                                            hmm_to=110, ali_from=7, ali_to=99))
        self.assertEqual(rec.target_id, "r_frame=-3")
        self.assertEqual(rec.model_coverage_len, 120)
        self.assertEqual(rec.ali_from, 7)
        self.assertEqual(rec.ali_to, 99)
        self.assertEqual(rec.frame, -3)
        self.assertAlmostEqual(rec.coverage, 108 / 120)

    def test_unparsable_score_is_nan(self):
        rec = parse_domtbl_line(domtbl_line("r1", dom_score="n/a"))
        self.assertTrue(math.isnan(rec.score))

    def test_unparsable_coordinates_are_malformed(self):
        self.assertIsNone(parse_domtbl_line(domtbl_line("r1", ali_from="x")))

    def test_zero_model_length_gives_nan_coverage(self):
        rec = parse_domtbl_line(domtbl_line("r1", qlen=0))
        self.assertTrue(math.isnan(rec.coverage))


class TestIterDomtbl(unittest.TestCase):

    def test_stats_counter(self):
        text = ("# header\n"
                + domtbl_line("a_frame=1")
                + "garbage line\n"
                + "\n"
                + domtbl_line("b_frame=1"))
        stats = Counter()
        records = list(iter_domtbl(io.StringIO(text), stats=stats))
        self.assertEqual([r.target_id for r in records], ["a_frame=1", "b_frame=1"])
        self.assertEqual(stats["lines"], 5)
        self.assertEqual(stats["comments"], 2)
        self.assertEqual(stats["malformed"], 1)
        self.assertEqual(stats["records"], 2)

    def test_bad_score_field(self):
        with self.assertRaises(ValueError):
            list(iter_domtbl(io.StringIO(""), score_field="bias"))


class TestSelectBestHits(unittest.TestCase):

    def test_coverage_filter(self):
        kept = make_hit("r1", 5.0, hmm_from=1, hmm_to=6)
        dropped = make_hit("r2", 50.0, hmm_from=1, hmm_to=4)
        best = select_best_hits([kept, dropped], min_coverage=0.5)
        self.assertEqual(list(best), ["r1"])

    def test_filter_applies_before_comparison(self):
        low_cov_high_score = make_hit("r1_frame=1", 99.0, hmm_to=2)
        good = make_hit("r1_frame=2", 10.0)
        best = select_best_hits([low_cov_high_score, good], min_coverage=0.5)
        self.assertIs(best["r1"].hit, good)

    def test_highest_score_wins_across_frames(self):
        a = make_hit("readA_frame=1", 12.3)
        b = make_hit("readA_frame=1", 9.8)
        best = select_best_hits([b, a])
        self.assertEqual(list(best), ["readA"])
        self.assertEqual(best["readA"].hit.score, 12.3)
        self.assertEqual(best["readA"].read_id, "readA")

    def test_tie_keeps_first(self):
        first = make_hit("r_frame=1", 10.0)
        second = make_hit("r_frame=-1", 10.0)
        self.assertIs(select_best_hits([first, second])["r"].hit, first)

    def test_nan_never_replaces(self):
        good = make_hit("r_frame=1", 10.0)
        nan = make_hit("r_frame=2", math.nan)
        self.assertIs(select_best_hits([good, nan])["r"].hit, good)

    def test_all_filtered_is_absent(self):
        self.assertEqual(select_best_hits([make_hit("r", 5.0, hmm_to=1)],
                                          min_coverage=0.9), {})

    def test_canonical_id_idempotent(self):
        for raw in ["readA_frame=1", "readA_frame=-3", "readA", "x_frame=2 "]:
            once = canonical_read_id(raw)
            self.assertEqual(canonical_read_id(once), once)
        self.assertEqual(canonical_read_id("readA_frame=-3"), "readA")


class TestRegions(unittest.TestCase):

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_half_open_conversion(self):
        hit = make_hit("read1_frame=2", 33.0)
        region = hit_to_region(SelectedHit("read1", hit))
        self.assertEqual(region, Region("read1_frame=2", 4, 20, 33.0))
        self.assertEqual(region.end - region.start, hit.ali_to - hit.ali_from + 1)

    def test_bed_round_trip(self):
        best = select_best_hits([make_hit("a_frame=1", 1.5),
                                 make_hit("b_frame=3", math.nan)])
        bed = os.path.join(self.test_dir, "out.bed")
        self.assertEqual(write_bed(regions_from_hits(best), bed), 2)
        with open(bed) as fh:
            self.assertEqual(fh.readline(), "a_frame=1\t4\t20\t1.5\n")
        back = read_bed(bed)
        self.assertEqual([r.target_id for r in back], ["a_frame=1", "b_frame=3"])
        self.assertTrue(math.isnan(back[1].score))

    def test_best_hits_from_file(self):
        path = os.path.join(self.test_dir, "hits.domtblout")
        with open(path, "w") as fh:
            fh.write("# comment\n")
            fh.write(domtbl_line("r1_frame=1", dom_score=20, hmm_to=6))
            fh.write(domtbl_line("r1_frame=-2", dom_score=30, hmm_to=4))
            fh.write("truncated line\n")
        best, stats = best_hits_from_file(path, min_coverage=0.5)
        self.assertEqual(best["r1"].hit.target_id, "r1_frame=1")
        self.assertEqual(stats["malformed"], 1)

    def test_cli_writes_bed(self):
        path = os.path.join(self.test_dir, "hits.domtblout")
        out = os.path.join(self.test_dir, "best.bed")
        with open(path, "w") as fh:
            fh.write(domtbl_line("r1_frame=1", seq_score=5, ali_from=3, ali_to=9))
        domtbl_hits.main([path, "--score-field", "sequence", "--output", out])
        self.assertEqual(read_bed(out), [Region("r1_frame=1", 2, 9, 5.0)])


if __name__ == '__main__':
    unittest.main()
