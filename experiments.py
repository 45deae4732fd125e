import argparse
import dataclasses
import os
import sys
import time
from typing import List, Optional, Sequence, Tuple

import numpy as np
import matplotlib.pyplot as plt
from tqdm import tqdm

from flow_stats import (
    FlowStatsRecord,
    RunRecord,
    append_flow_stats,
    collect_flow_stats,
    dataset_path,
    load_dataset,
    print_flow_summary,
    summarize_dataset,
)
from hierarchy_sim import LEADER_MOBILITY_MODES, HierarchicalManet, SimulationConfig


def run_single(cfg: SimulationConfig, run_number: int) -> Tuple[RunRecord, List[FlowStatsRecord]]:
    """Execute one run with seed ``run_number`` and reduce its telemetry flows."""
    cfg = dataclasses.replace(cfg, seed=run_number)
    sim = HierarchicalManet(cfg)
    result = sim.run(headless=True)
    run = RunRecord(
        run_number=run_number,
        nodes_per_cluster=cfg.nodes_per_cluster,
        sim_time=cfg.sim_time,
        area_size=cfg.area_size,
        follower_speed=cfg.follower_speed,
        noise_factor=cfg.noise_factor,
        packet_size=cfg.packet_size,
        seed=cfg.seed,
    )
    return run, collect_flow_stats(result.monitor)


def run_experiments(
    base_cfg: SimulationConfig,
    num_runs: int = 1,
    output_dir: str = ".",
    verbose: bool = False,
) -> List[Tuple[RunRecord, List[FlowStatsRecord]]]:
    """Run ``num_runs`` sequential repetitions and append their flows to the dataset.

    Run ``k`` (0-based) uses seed ``k + 1``, so repeated invocations with the same
    ``num_runs`` reproduce the same runs. Every repetition builds a fresh
    simulation; nothing carries over between runs except the output file.
    """
    if num_runs < 1:
        raise ValueError(f"num_runs must be >= 1, got {num_runs}")
    base_cfg.validate()
    os.makedirs(output_dir, exist_ok=True)
    csv_path = dataset_path(output_dir, base_cfg.packet_size)

    results: List[Tuple[RunRecord, List[FlowStatsRecord]]] = []
    t0 = time.time()
    for run_idx in tqdm(range(num_runs), desc=f"Runs (packet size {base_cfg.packet_size})", leave=False):
        print(f"Running simulation {run_idx + 1}/{num_runs} for packet size: {base_cfg.packet_size}")
        run, flows = run_single(base_cfg, run_idx + 1)
        print(f"Writing statistics to {csv_path}...")
        append_flow_stats(csv_path, run, flows)
        if verbose:
            print_flow_summary(run, flows)
        results.append((run, flows))
    t1 = time.time()
    print(f"Completed {num_runs} run(s) in {(t1 - t0):.1f} s. Statistics saved.")
    return results


def plot_run_summary(csv_path: str, out_file: Optional[str] = None) -> str:
    """Plot mean delivery ratio and throughput per run from an accumulated dataset."""
    summary = summarize_dataset(load_dataset(csv_path))
    runs = np.array(list(summary.keys()))
    pdr = np.array([s["mean_pdr"] for s in summary.values()])
    thr = np.array([s["mean_throughput_kbps"] for s in summary.values()])

    fig, ax1 = plt.subplots(figsize=(8, 4))
    ax1.plot(runs, pdr, marker='o', color='tab:blue', label='Mean PDR (%)')
    ax1.set_xlabel('Run number')
    ax1.set_ylabel('Packet delivery ratio (%)')
    ax1.set_ylim(0, 105)
    ax1.grid(True, alpha=0.3)
    ax2 = ax1.twinx()
    ax2.plot(runs, thr, marker='s', color='tab:red', label='Mean throughput (kbps)')
    ax2.set_ylabel('Throughput (kbps)')
    ax1.set_title(f'Telemetry flows per run ({os.path.basename(csv_path)})')
    fig.tight_layout()

    if out_file is None:
        out_file = os.path.splitext(csv_path)[0] + ".png"
    fig.savefig(out_file, dpi=150)
    plt.close(fig)
    print(f"Saved plot to {out_file}")
    return out_file


def build_parser() -> argparse.ArgumentParser:
    defaults = SimulationConfig()
    p = argparse.ArgumentParser(description="Hierarchical MANET mobility experiments")
    p.add_argument("--nodesPerCluster", type=int, default=defaults.nodes_per_cluster,
                   help="Nodes per cluster, leader included")
    p.add_argument("--simTime", type=float, default=defaults.sim_time, help="Simulation time in seconds")
    p.add_argument("--areaSize", type=float, default=defaults.area_size, help="Side of the square area in meters")
    p.add_argument("--followerSpeed", type=float, default=defaults.follower_speed, help="Follower speed in m/s")
    p.add_argument("--noiseFactor", type=float, default=defaults.noise_factor, help="Follower movement noise")
    p.add_argument("--packetSize", type=int, default=defaults.packet_size, help="Telemetry packet size in bytes")
    p.add_argument("--numRuns", type=int, default=1, help="Number of simulation repetitions")
    p.add_argument("--outputDir", default=".", help="Directory for the CSV dataset")
    p.add_argument("--leaderMobility", choices=LEADER_MOBILITY_MODES, default=defaults.leader_mobility)
    p.add_argument("--commRange", type=float, default=defaults.comm_range, help="Radio range in meters")
    p.add_argument("--dataRate", type=float, default=defaults.data_rate_kbps, help="Telemetry rate in kbps")
    p.add_argument("--plot", action="store_true", help="Plot per-run summary after the runs")
    p.add_argument("--verbose", action="store_true", help="Print per-flow results for each run")
    p.add_argument("--log", action="store_true", help="Print simulation-time diagnostics")
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    cfg = SimulationConfig(
        nodes_per_cluster=args.nodesPerCluster,
        sim_time=args.simTime,
        area_size=args.areaSize,
        follower_speed=args.followerSpeed,
        noise_factor=args.noiseFactor,
        packet_size=args.packetSize,
        leader_mobility=args.leaderMobility,
        comm_range=args.commRange,
        data_rate_kbps=args.dataRate,
        log=args.log,
    )
    try:
        cfg.validate()
        if args.numRuns < 1:
            raise ValueError(f"numRuns must be >= 1, got {args.numRuns}")
    except ValueError as exc:
        parser.error(str(exc))

    try:
        run_experiments(cfg, num_runs=args.numRuns, output_dir=args.outputDir, verbose=args.verbose)
    except OSError as exc:
        print(f"error: cannot write statistics: {exc}", file=sys.stderr)
        return 1

    if args.plot:
        plot_run_summary(dataset_path(args.outputDir, cfg.packet_size))
    return 0


if __name__ == "__main__":
    sys.exit(main())
