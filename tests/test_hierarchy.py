import unittest

from simulator import (CacheHierarchy, ConfigurationError, HierarchyConfig, LevelConfig, LevelStats,
                       format_core_statistics, format_statistics, run_simulation)
from tracefile import generate_synthetic_trace


def small_config(num_cores=2):
    return HierarchyConfig(
        num_cores=num_cores,
        l1=LevelConfig(512, 64, 2),    # 4 sets
        l2=LevelConfig(2048, 64, 4),   # 8 sets
        l3=LevelConfig(8192, 64, 8),   # 16 sets
    )


class TestHierarchyConfig(unittest.TestCase):

    def test_defaults_are_valid(self):
        cfg = HierarchyConfig()
        cfg.validate()
        self.assertEqual(cfg.num_cores, 78)
        self.assertEqual(cfg.l2.num_sets, 79872)  # not a power of two

    def test_from_dict_overrides_and_roundtrips(self):
        cfg = HierarchyConfig.from_dict(small_config().as_dict())
        self.assertEqual(cfg, small_config())
        cfg = HierarchyConfig.from_dict({"l1_associativity": 4})
        self.assertEqual(cfg.l1.associativity, 4)
        self.assertEqual(cfg.l2, HierarchyConfig().l2)

    def test_from_dict_rejects_unknown_keys(self):
        with self.assertRaisesRegex(ConfigurationError, "l4_size"):
            HierarchyConfig.from_dict({"l4_size": 1024})

    def test_construction_rejects_bad_level(self):
        cfg = small_config()
        cfg.l3 = LevelConfig(8000, 64, 8)
        with self.assertRaisesRegex(ConfigurationError, "^L3:"):
            CacheHierarchy(cfg)


class TestCacheHierarchy(unittest.TestCase):

    def setUp(self):
        self.h = CacheHierarchy(small_config())

    def stats(self):
        s = self.h.statistics()
        return tuple((s[name].hits, s[name].misses) for name in ("L1", "L2", "L3"))

    def test_cold_access_misses_every_level(self):
        self.h.access(0x0, 0)
        self.assertEqual(self.stats(), ((0, 1), (0, 1), (0, 1)))
        self.assertTrue(self.h.l1_cache(0).contains(0x0))
        self.assertTrue(self.h.l2.contains(0x0))
        self.assertTrue(self.h.l3.contains(0x0))

    def test_l1_hit_stops_at_l1(self):
        self.h.access(0x0, 0)
        self.h.access(0x0, 0)
        self.assertEqual(self.stats(), ((1, 1), (0, 1), (0, 1)))

    def test_l2_hit_fills_private_l1(self):
        self.h.access(0x0, 0)
        self.h.access(0x0, 1)  # other core: own L1 misses, shared L2 hits
        self.assertEqual(self.stats(), ((0, 2), (1, 1), (0, 1)))
        self.h.access(0x0, 1)
        self.assertEqual(self.stats(), ((1, 2), (1, 1), (0, 1)))

    def test_inclusion_after_l1_eviction(self):
        for a in (0x000, 0x100, 0x200):
            self.h.access(a, 0)
        l1 = self.h.l1_cache(0)
        self.assertFalse(l1.contains(0x000))
        self.assertTrue(self.h.l2.contains(0x000))
        self.h.access(0x000, 0)
        self.assertTrue(l1.contains(0x000))
        l2_before = self.h.l2_statistics()
        self.h.access(0x000, 0)
        self.assertEqual(self.h.l2_statistics(), l2_before)
        self.assertEqual(l1.statistics(), (1, 4))

    def test_l3_hit_fills_upper_levels(self):
        # 0x000 and 0x200, 0x400, ... share L2 set 0 (8 sets, 4 ways)
        for i in range(5):
            self.h.access(i * 0x200, 0)
        self.assertFalse(self.h.l2.contains(0x000))
        self.assertTrue(self.h.l3.contains(0x000))
        self.h.access(0x000, 1)
        self.assertEqual(self.h.l3_statistics(), (1, 5))
        self.assertTrue(self.h.l2.contains(0x000))
        self.assertTrue(self.h.l1_cache(1).contains(0x000))

    def test_sparse_core_ids_get_private_l1s(self):
        h = CacheHierarchy(small_config(num_cores=2))
        for core in (7, 1000000, 3):
            h.access(0x0, core)
        self.assertEqual(sorted(h.core_ids()), [3, 7, 1000000])
        self.assertEqual(len({id(c) for c in h.l1_caches.values()}), 3)
        # only the first core missed all the way down
        self.assertEqual(h.l2_statistics(), (2, 1))
        self.assertEqual(list(h.iter_l1_statistics()), [(0, 1), (0, 1), (0, 1)])

    def test_l1_cache_is_stable_per_core(self):
        self.assertIs(self.h.l1_cache("cpu0"), self.h.l1_cache("cpu0"))
        self.assertIsNot(self.h.l1_cache("cpu0"), self.h.l1_cache("cpu1"))
        self.assertFalse(self.h.l1_cache("cpu0").shared)
        self.assertTrue(self.h.l2.shared and self.h.l3.shared)

    def test_conservation(self):
        records = list(generate_synthetic_trace(3000, num_threads=3, address_space_kb=64, seed=7))
        for rec in records:
            self.h.access(rec.address, rec.thread_id)
        s = self.h.statistics()
        self.assertEqual(s["L1"].accesses, len(records))
        self.assertEqual(s["L2"].accesses, s["L1"].misses)
        self.assertEqual(s["L3"].accesses, s["L2"].misses)

    def test_deterministic_replay(self):
        lines = [rec.to_line() for rec in generate_synthetic_trace(2000, num_threads=4, address_space_kb=32)]
        first = run_simulation(lines, small_config(), progress_every=0)
        second = run_simulation(lines, small_config(), progress_every=0)
        self.assertEqual(first.stats, second.stats)
        self.assertEqual(first.records, 2000)


class TestReporting(unittest.TestCase):

    def test_format_statistics(self):
        stats = {"L1": LevelStats(10, 2), "L2": LevelStats(1, 1), "L3": LevelStats(0, 1)}
        self.assertEqual(format_statistics(stats),
                         "Cache Statistics:\n"
                         "L1: 10 hits, 2 misses\n"
                         "L2: 1 hits, 1 misses\n"
                         "L3: 0 hits, 1 misses")

    def test_format_statistics_reports_skipped(self):
        stats = {"L1": LevelStats(), "L2": LevelStats(), "L3": LevelStats()}
        self.assertTrue(format_statistics(stats, skipped=3).endswith("\nSkipped: 3 malformed records"))

    def test_hit_rate(self):
        self.assertEqual(LevelStats().hit_rate, 0.0)
        self.assertEqual(LevelStats(3, 1).hit_rate, 0.75)

    def test_format_core_statistics(self):
        h = CacheHierarchy(small_config())
        h.access(0x0, 1)
        h.access(0x0, 1)
        h.access(0x0, 0)
        self.assertEqual(format_core_statistics(h),
                         "L1[0]: 0 hits, 1 misses\nL1[1]: 1 hits, 1 misses")


class TestReplay(unittest.TestCase):

    def test_skips_and_counts_malformed_records(self):
        lines = [
            "# comment\n",
            "R 0 0 4096\n",
            "\n",
            "R 64\n",
            "W 0x40 1 0x1000\n",
            "R -64 0 4096\n",
            "R 0 0 4096\n",
        ]
        with self.assertLogs("simulator", level="WARNING") as logs:
            result = run_simulation(lines, small_config(), progress_every=0)
        self.assertEqual(result.records, 3)
        self.assertEqual(result.skipped, 2)
        self.assertEqual(result.cores, 2)
        self.assertEqual(len(logs.records), 2)
        self.assertIn("line 4", logs.output[0])
        self.assertEqual((result.stats["L1"].hits, result.stats["L1"].misses), (1, 2))
        self.assertIn("Skipped: 2 malformed records", result.report())

    def test_progress_logging(self):
        lines = ["R %d 0 0" % (i * 64) for i in range(25)]
        with self.assertLogs("simulator", level="INFO") as logs:
            run_simulation(lines, small_config(), progress_every=10)
        progress = [m for m in logs.output if "Processed" in m]
        self.assertEqual(len(progress), 2)


if __name__ == "__main__":
    unittest.main()
