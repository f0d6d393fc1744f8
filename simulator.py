#!/usr/bin/env python3
import csv
import json
import logging
import os
from dataclasses import dataclass, field, fields
from typing import Dict, Hashable, Iterable, Iterator, List, Optional, Tuple

from tracefile import MalformedRecordError, parse_trace_line

logger = logging.getLogger(__name__)

LEVELS = ("L1", "L2", "L3")
PROGRESS_EVERY = 10000


class ConfigurationError(ValueError):
    """Raised when a cache level or hierarchy cannot be built from its parameters."""


# ---------------- Configuration ----------------
@dataclass
class LevelConfig:
    size: int
    line_size: int = 64
    associativity: int = 8

    @property
    def num_sets(self) -> int:
        return self.size // (self.line_size * self.associativity)

    def describe(self) -> str:
        return f"{self.size}B, {self.line_size}B lines, {self.associativity}-way, {self.num_sets} sets"

    def validate(self, name: str = "cache"):
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{name}: {f.name} must be a positive integer, got {value!r}")
        way_bytes = self.line_size * self.associativity
        if self.size % way_bytes:
            raise ConfigurationError(
                f"{name}: size {self.size} is not divisible by line_size * associativity ({way_bytes})")
        if self.num_sets == 0:
            raise ConfigurationError(f"{name}: configuration yields zero sets")


@dataclass
class HierarchyConfig:
    # Defaults reproduce the reference server run: 78 cores, 64-byte lines everywhere.
    num_cores: int = 78
    l1: LevelConfig = field(default_factory=lambda: LevelConfig(5 * 1024 * 1024, 64, 8))
    l2: LevelConfig = field(default_factory=lambda: LevelConfig(39 * 1024 * 1024, 64, 8))
    l3: LevelConfig = field(default_factory=lambda: LevelConfig(6 * 1024 * 1024, 64, 16))

    def validate(self):
        if isinstance(self.num_cores, bool) or not isinstance(self.num_cores, int) or self.num_cores <= 0:
            raise ConfigurationError(f"num_cores must be a positive integer, got {self.num_cores!r}")
        for name in LEVELS:
            self.level(name).validate(name)

    def level(self, name: str) -> LevelConfig:
        return getattr(self, name.lower())

    def as_dict(self) -> Dict[str, int]:
        out = {"num_cores": self.num_cores}
        for name in LEVELS:
            lvl = self.level(name)
            prefix = name.lower()
            out[f"{prefix}_size"] = lvl.size
            out[f"{prefix}_line_size"] = lvl.line_size
            out[f"{prefix}_associativity"] = lvl.associativity
        return out

    @classmethod
    def from_dict(cls, values: Dict[str, int]) -> "HierarchyConfig":
        """
        Build a config from the flat option names used on the command line and in
        JSON config files (num_cores, l1_size, l1_line_size, l1_associativity, ...).
        Missing keys keep their defaults; unknown keys are rejected.
        """
        merged = cls().as_dict()
        unknown = sorted(set(values) - set(merged))
        if unknown:
            raise ConfigurationError(f"unknown configuration keys: {', '.join(unknown)}")
        merged.update(values)
        levels = {}
        for name in LEVELS:
            prefix = name.lower()
            levels[prefix] = LevelConfig(
                size=merged[f"{prefix}_size"],
                line_size=merged[f"{prefix}_line_size"],
                associativity=merged[f"{prefix}_associativity"],
            )
        cfg = cls(num_cores=merged["num_cores"], **levels)
        cfg.validate()
        return cfg

    @classmethod
    def from_json(cls, path: str) -> "HierarchyConfig":
        try:
            with open(path, "r") as f:
                values = json.load(f)
        except OSError as e:
            raise ConfigurationError(f"cannot read config {path}: {e.strerror or e}") from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"{path}: invalid JSON: {e}") from e
        if not isinstance(values, dict):
            raise ConfigurationError(f"{path}: expected a JSON object of configuration keys")
        return cls.from_dict(values)


def _is_power_of_two(n: int) -> bool:
    return n > 0 and n & (n - 1) == 0


# ---------------- Single cache level ----------------
class CacheLine:
    __slots__ = ("tag", "valid", "last_access_time")

    def __init__(self, tag: int = 0, valid: bool = False, last_access_time: int = 0):
        self.tag = tag
        self.valid = valid
        self.last_access_time = last_access_time

    def __repr__(self):
        return f"CacheLine(tag={self.tag}, valid={self.valid}, last_access_time={self.last_access_time})"


class SetAssociativeCache:
    def __init__(self, size: int, line_size: int, associativity: int, shared: bool = False, name: str = "cache"):
        LevelConfig(size, line_size, associativity).validate(name)
        self.name = name
        self.size = size
        self.line_size = line_size
        self.associativity = associativity
        self.shared = shared

        self.num_sets = size // (line_size * associativity)
        self.sets: List[List[CacheLine]] = [
            [CacheLine() for _ in range(associativity)] for _ in range(self.num_sets)
        ]
        # logical clock for LRU ordering; ticks on every access, counted or not
        self.clock = 0

        # fast path only when both fields are whole bit ranges of the address
        self.power_of_two = _is_power_of_two(line_size) and _is_power_of_two(self.num_sets)
        self.offset_bits = line_size.bit_length() - 1
        self.index_bits = self.num_sets.bit_length() - 1
        self.set_mask = (1 << self.index_bits) - 1

        # stats
        self.hits = 0
        self.misses = 0

    @classmethod
    def from_config(cls, cfg: LevelConfig, shared: bool = False, name: str = "cache") -> "SetAssociativeCache":
        return cls(cfg.size, cfg.line_size, cfg.associativity, shared=shared, name=name)

    def decompose(self, address: int) -> Tuple[int, int]:
        """Return (tag, set_index) for a byte address."""
        if self.power_of_two:
            set_index = (address >> self.offset_bits) & self.set_mask
            tag = address >> (self.offset_bits + self.index_bits)
            return tag, set_index
        block_addr = address // self.line_size
        return block_addr // self.num_sets, block_addr % self.num_sets

    def _find(self, cset: List[CacheLine], tag: int) -> Optional[CacheLine]:
        for line in cset:
            if line.valid and line.tag == tag:
                return line
        return None

    def _choose_victim(self, cset: List[CacheLine]) -> CacheLine:
        for line in cset:
            if not line.valid:
                return line
        # strict LRU; the first line in set order wins a tie
        victim = cset[0]
        for line in cset[1:]:
            if line.last_access_time < victim.last_access_time:
                victim = line
        return victim

    def access(self, address: int, count: bool = True) -> bool:
        """
        Look the address up, filling it on a miss. Returns True on a hit.
        With count=False the access is a silent probe/fill: replacement state is
        updated exactly as for a counted access but hits/misses are left alone.
        """
        tag, set_index = self.decompose(address)
        cset = self.sets[set_index]
        self.clock += 1

        line = self._find(cset, tag)
        if line is not None:
            line.last_access_time = self.clock
            if count:
                self.hits += 1
            return True

        if count:
            self.misses += 1
        victim = self._choose_victim(cset)
        victim.tag = tag
        victim.valid = True
        victim.last_access_time = self.clock
        return False

    def contains(self, address: int) -> bool:
        """Residency check that touches neither LRU state nor statistics."""
        tag, set_index = self.decompose(address)
        return self._find(self.sets[set_index], tag) is not None

    def occupancy(self) -> int:
        return sum(1 for cset in self.sets for line in cset if line.valid)

    def statistics(self) -> Tuple[int, int]:
        return self.hits, self.misses

    def __repr__(self):
        kind = "shared" if self.shared else "private"
        return (f"SetAssociativeCache({self.name}, {self.size}B, {self.line_size}B lines, "
                f"{self.associativity}-way, {self.num_sets} sets, {kind})")


# ---------------- Hierarchy ----------------
@dataclass
class LevelStats:
    hits: int = 0
    misses: int = 0

    @property
    def accesses(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        return self.hits / self.accesses if self.accesses else 0.0


class CacheHierarchy:
    """
    Private L1 per core id, shared L2 and L3, inclusive fill on every miss path.

    Core ids are opaque keys: an L1 is created the first time an id is seen and
    kept for the lifetime of the hierarchy. num_cores in the config is advisory
    and never caps or folds the set of ids.
    """

    def __init__(self, config: Optional[HierarchyConfig] = None):
        self.config = config if config is not None else HierarchyConfig()
        self.config.validate()
        self.l1_caches: Dict[Hashable, SetAssociativeCache] = {}
        self.l2 = SetAssociativeCache.from_config(self.config.l2, shared=True, name="L2")
        self.l3 = SetAssociativeCache.from_config(self.config.l3, shared=True, name="L3")

    def l1_cache(self, core_id: Hashable) -> SetAssociativeCache:
        l1 = self.l1_caches.get(core_id)
        if l1 is None:
            l1 = SetAssociativeCache.from_config(self.config.l1, shared=False, name=f"L1[{core_id}]")
            self.l1_caches[core_id] = l1
            logger.debug("created %r", l1)
        return l1

    def access(self, address: int, core_id: Hashable):
        l1 = self.l1_cache(core_id)
        if l1.access(address):
            return

        if self.l2.access(address):
            l1.access(address, count=False)
            return

        # filled from L3 or from memory; either way both upper levels get the line
        self.l3.access(address)
        self.l2.access(address, count=False)
        l1.access(address, count=False)

    def core_ids(self) -> List[Hashable]:
        return list(self.l1_caches)

    def iter_l1_statistics(self) -> Iterator[Tuple[int, int]]:
        for l1 in self.l1_caches.values():
            yield l1.statistics()

    def l2_statistics(self) -> Tuple[int, int]:
        return self.l2.statistics()

    def l3_statistics(self) -> Tuple[int, int]:
        return self.l3.statistics()

    def statistics(self) -> Dict[str, LevelStats]:
        l1 = LevelStats()
        for hits, misses in self.iter_l1_statistics():
            l1.hits += hits
            l1.misses += misses
        return {
            "L1": l1,
            "L2": LevelStats(*self.l2_statistics()),
            "L3": LevelStats(*self.l3_statistics()),
        }


# ---------------- Reporting ----------------
def format_statistics(stats: Dict[str, LevelStats], skipped: int = 0) -> str:
    lines = ["Cache Statistics:"]
    for name in LEVELS:
        s = stats[name]
        lines.append(f"{name}: {s.hits} hits, {s.misses} misses")
    if skipped:
        lines.append(f"Skipped: {skipped} malformed records")
    return "\n".join(lines)


def format_core_statistics(hierarchy: CacheHierarchy) -> str:
    lines = []
    for core_id in sorted(hierarchy.l1_caches, key=str):
        hits, misses = hierarchy.l1_caches[core_id].statistics()
        lines.append(f"L1[{core_id}]: {hits} hits, {misses} misses")
    return "\n".join(lines)


# ---------------- Simulation runner ----------------
@dataclass
class SimulationResult:
    records: int
    skipped: int
    stats: Dict[str, LevelStats]
    cores: int

    def report(self) -> str:
        return format_statistics(self.stats, self.skipped)


def replay(lines: Iterable[str], hierarchy: CacheHierarchy, progress_every: int = PROGRESS_EVERY) -> Tuple[int, int]:
    """
    Feed raw trace lines through the hierarchy in order.
    Blank and '#' lines are ignored; malformed records are logged, counted and skipped.
    Returns (records processed, records skipped).
    """
    records = 0
    skipped = 0
    for line_number, line in enumerate(lines, start=1):
        text = line.strip()
        if not text or text.startswith("#"):
            continue
        try:
            rec = parse_trace_line(text, line_number)
        except MalformedRecordError as e:
            skipped += 1
            logger.warning("skipping %s", e)
            continue

        hierarchy.access(rec.address, rec.thread_id)
        records += 1
        if progress_every and records % progress_every == 0:
            logger.info("Processed %d records", records)
    return records, skipped


def run_simulation(lines: Iterable[str], config: Optional[HierarchyConfig] = None,
                   progress_every: int = PROGRESS_EVERY,
                   hierarchy: Optional[CacheHierarchy] = None) -> SimulationResult:
    if hierarchy is None:
        hierarchy = CacheHierarchy(config)
    records, skipped = replay(lines, hierarchy, progress_every)
    logger.info("Replay finished: %d records, %d skipped, %d cores",
                records, skipped, len(hierarchy.l1_caches))
    return SimulationResult(records=records, skipped=skipped,
                            stats=hierarchy.statistics(), cores=len(hierarchy.l1_caches))


RESULTS_HEADER = ["run_id", "records", "skipped", "cores",
                  "l1_hits", "l1_misses", "l1_hit_rate",
                  "l2_hits", "l2_misses", "l2_hit_rate",
                  "l3_hits", "l3_misses", "l3_hit_rate",
                  "config_json"]


def write_results_row(results_csv_path: str, run_id: str, result: SimulationResult, config: HierarchyConfig):
    write_header = not os.path.exists(results_csv_path)
    with open(results_csv_path, "a", newline="") as rf:
        rw = csv.writer(rf)
        if write_header:
            rw.writerow(RESULTS_HEADER)
        row = [run_id, result.records, result.skipped, result.cores]
        for name in LEVELS:
            s = result.stats[name]
            row.extend([s.hits, s.misses, s.hit_rate])
        row.append(json.dumps(config.as_dict()))
        rw.writerow(row)


if __name__ == "__main__":
    print("Use run_experiments.py or run_sweeps.py to run experiments and generate CSVs.")
