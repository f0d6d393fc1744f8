#!/usr/bin/env python3
"""
Convenience sweeps + KPI summary.
Each point replays the same trace through a fresh hierarchy.
Examples:
  python run_sweeps.py assoc --l1_assoc "2,4,8,16"
  python run_sweeps.py lines --line_size "32,64,128"
  python run_sweeps.py l1size --l1_size_kb "16,32,64" --trace memory_trace.log
"""
import argparse
import logging
import os
import sys
import time

import pandas as pd

from simulator import ConfigurationError, HierarchyConfig, LevelConfig, run_simulation, write_results_row
from tracefile import TraceUnavailableError, generate_synthetic_trace, read_trace

logger = logging.getLogger("run_sweeps")


def parse_args(argv=None):
    p = argparse.ArgumentParser()
    p.add_argument("mode", choices=["assoc", "lines", "l1size"], help="Sweep dimension")
    p.add_argument("--outdir", default="outputs")
    p.add_argument("--trace", default=None, help="Trace file; a synthetic trace is generated when omitted.")
    # Base config
    p.add_argument("--num_cores", type=int, default=4)
    p.add_argument("--l1_size_kb", type=str, default="32")
    p.add_argument("--l1_assoc", type=str, default="8")
    p.add_argument("--l2_size_kb", type=int, default=256)
    p.add_argument("--l2_assoc", type=int, default=8)
    p.add_argument("--l3_size_kb", type=int, default=2048)
    p.add_argument("--l3_assoc", type=int, default=16)
    p.add_argument("--line_size", type=str, default="64")
    # Synthetic workload
    p.add_argument("--n", type=int, default=10000)
    p.add_argument("--address_space_kb", type=int, default=1024)
    p.add_argument("--seq_frac", type=float, default=0.5)
    p.add_argument("--hot_frac", type=float, default=0.3)
    p.add_argument("--write_ratio", type=float, default=0.1)
    p.add_argument("--seed", type=int, default=42)
    return p.parse_args(argv)


def to_int_list(s):
    return [int(tok.strip()) for tok in s.split(",") if tok.strip()]


def make_config(args, l1_size_kb, l1_assoc, line_size) -> HierarchyConfig:
    cfg = HierarchyConfig(
        num_cores=args.num_cores,
        l1=LevelConfig(l1_size_kb * 1024, line_size, l1_assoc),
        l2=LevelConfig(args.l2_size_kb * 1024, line_size, args.l2_assoc),
        l3=LevelConfig(args.l3_size_kb * 1024, line_size, args.l3_assoc),
    )
    cfg.validate()
    return cfg


def sweep_points(args):
    l1_sizes = to_int_list(args.l1_size_kb)
    assocs = to_int_list(args.l1_assoc)
    line_sizes = to_int_list(args.line_size)
    if args.mode == "assoc":
        for a in assocs:
            yield f"assoc_{a}", make_config(args, l1_sizes[0], a, line_sizes[0])
    elif args.mode == "lines":
        for ls in line_sizes:
            yield f"line_{ls}", make_config(args, l1_sizes[0], assocs[0], ls)
    elif args.mode == "l1size":
        for kb in l1_sizes:
            yield f"l1_{kb}kb", make_config(args, kb, assocs[0], line_sizes[0])


def trace_lines(args):
    if args.trace:
        return read_trace(args.trace)
    records = generate_synthetic_trace(args.n, args.num_cores, args.address_space_kb, to_int_list(args.line_size)[0],
                                       args.seq_frac, args.hot_frac, args.write_ratio, args.seed)
    return (rec.to_line() for rec in records)


def summarize(results_csv, summary_path):
    """Add hit-rate deltas vs the first row and write a short text summary."""
    df = pd.read_csv(results_csv)
    if len(df) < 2:
        return df
    base = df.iloc[0]
    for lvl in ("l1", "l2", "l3"):
        df[f"delta_{lvl}_hit_rate_vs_base"] = df[f"{lvl}_hit_rate"].astype(float) - float(base[f"{lvl}_hit_rate"])
    df.to_csv(results_csv, index=False)
    lines = ["Hit-rate deltas vs baseline: " + str(base["run_id"])]
    for _, r in df.iterrows():
        lines.append(f"- {r['run_id']}: ΔL1={r['delta_l1_hit_rate_vs_base']:+.4f}, "
                     f"ΔL2={r['delta_l2_hit_rate_vs_base']:+.4f}, ΔL3={r['delta_l3_hit_rate_vs_base']:+.4f}")
    with open(summary_path, "w") as f:
        f.write("\n".join(lines))
    return df


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    os.makedirs(args.outdir, exist_ok=True)
    results_csv = os.path.join(args.outdir, "results.csv")

    # reset outputs so the header is written once for this sweep
    try:
        os.remove(results_csv)
    except FileNotFoundError:
        pass

    stamp = int(time.time())
    try:
        for name, cfg in sweep_points(args):
            result = run_simulation(trace_lines(args), cfg, progress_every=0)
            write_results_row(results_csv, f"{name}_{stamp}", result, cfg)
            logger.info("%s: L1 %.4f, L2 %.4f, L3 %.4f", name, result.stats["L1"].hit_rate,
                        result.stats["L2"].hit_rate, result.stats["L3"].hit_rate)
    except (ConfigurationError, TraceUnavailableError) as e:
        logger.error("%s", e)
        return 2

    if not os.path.exists(results_csv):
        logger.error("no sweep points given")
        return 2
    summarize(results_csv, os.path.join(args.outdir, "summary.txt"))
    return 0


if __name__ == "__main__":
    sys.exit(main())
