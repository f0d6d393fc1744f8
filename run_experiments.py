#!/usr/bin/env python3
import argparse
import logging
import os
import sys
import time

from simulator import (ConfigurationError, HierarchyConfig, LEVELS, CacheHierarchy,
                       format_core_statistics, run_simulation, write_results_row)
from tracefile import TraceUnavailableError, read_trace

logger = logging.getLogger("run_experiments")

CONFIG_KEYS = list(HierarchyConfig().as_dict())


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Replay a memory trace through an L1/L2/L3 cache hierarchy")
    p.add_argument("--trace", type=str, default="memory_trace.log",
                   help="Trace file: <access_type> <address> <thread_id> <return_address> per line.")
    p.add_argument("--config", type=str, default=None, help="JSON file with hierarchy configuration keys.")
    p.add_argument("--num_cores", type=int, default=None, help="Advisory core count (not a cap).")
    for name in LEVELS:
        prefix = name.lower()
        p.add_argument(f"--{prefix}_size", type=int, default=None, help=f"{name} size in bytes.")
        p.add_argument(f"--{prefix}_line_size", type=int, default=None, help=f"{name} line size in bytes.")
        p.add_argument(f"--{prefix}_associativity", type=int, default=None, help=f"{name} ways per set.")
    p.add_argument("--progress_every", type=int, default=10000, help="Log progress every N records (0 disables).")
    p.add_argument("--per_core", action="store_true", help="Also print per-core L1 statistics.")
    p.add_argument("--outdir", type=str, default=None, help="Append a results row to <outdir>/results.csv.")
    p.add_argument("--run_id", type=str, default=None)
    p.add_argument("--log_level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return p.parse_args(argv)


def setup_logging(level: str):
    logging.basicConfig(format="%(message)s")
    logging.getLogger().setLevel(level)


def build_config(args) -> HierarchyConfig:
    values = HierarchyConfig.from_json(args.config).as_dict() if args.config else {}
    for key in CONFIG_KEYS:
        override = getattr(args, key)
        if override is not None:
            values[key] = override
    return HierarchyConfig.from_dict(values)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = build_config(args)
        hierarchy = CacheHierarchy(config)
        for name in LEVELS:
            logger.info("%s: %s", name, config.level(name).describe())
        result = run_simulation(read_trace(args.trace), progress_every=args.progress_every, hierarchy=hierarchy)
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return 2
    except TraceUnavailableError as e:
        logger.error("Trace unavailable: %s", e)
        return 2

    print(result.report())
    if args.per_core:
        print(format_core_statistics(hierarchy))

    if args.outdir:
        os.makedirs(args.outdir, exist_ok=True)
        results_csv = os.path.join(args.outdir, "results.csv")
        run_id = args.run_id or f"custom_{int(time.time())}"
        write_results_row(results_csv, run_id, result, config)
        logger.info("Results appended to %s", results_csv)
    return 0


if __name__ == "__main__":
    sys.exit(main())
