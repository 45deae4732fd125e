"""
Per-flow statistics: metric formulas, telemetry-port filtering and the
append-only CSV dataset shared by every run of an experiment.
"""

import csv
import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from telemetry_net import TELEMETRY_PORT, FlowMonitor


CSV_HEADER = [
    "RunNumber", "NodesPerCluster", "SimTime", "AreaSize", "FollowerSpeed", "NoiseFactor", "PacketSize",
    "FlowID", "SourceAddress", "DestinationAddress", "TxPackets", "RxPackets", "TxBytes", "RxBytes",
    "PacketDeliveryRatio", "AvgLatency_ms", "AvgThroughput_kbps",
]


@dataclass(frozen=True)
class RunRecord:
    """Identity and scalar configuration of one experiment repetition."""
    run_number: int
    nodes_per_cluster: int
    sim_time: float
    area_size: float
    follower_speed: float
    noise_factor: float
    packet_size: int
    seed: int


@dataclass(frozen=True)
class FlowStatsRecord:
    flow_id: int
    source_address: str
    destination_address: str
    tx_packets: int
    rx_packets: int
    tx_bytes: int
    rx_bytes: int
    delivery_ratio: float
    avg_latency_ms: float
    avg_throughput_kbps: float


# ---------------------- metric formulas ----------------------
def delivery_ratio(tx_packets: int, rx_packets: int) -> float:
    """Percentage of transmitted packets received; 0 when nothing was sent."""
    return (rx_packets / tx_packets) * 100.0 if tx_packets > 0 else 0.0


def avg_latency_ms(delay_sum_s: float, rx_packets: int) -> float:
    return (delay_sum_s * 1000.0) / rx_packets if rx_packets > 0 else 0.0


def avg_throughput_kbps(rx_bytes: int, first_tx: Optional[float], last_rx: Optional[float]) -> float:
    """Received bits per millisecond of flow lifetime (first tx to last rx)."""
    if first_tx is None or last_rx is None:
        return 0.0
    duration = last_rx - first_tx
    return (rx_bytes * 8.0) / (duration * 1000.0) if duration > 0 else 0.0


# ---------------------- reduction ----------------------
def collect_flow_stats(monitor: FlowMonitor, port: int = TELEMETRY_PORT) -> List[FlowStatsRecord]:
    """Reduce monitor counters to records, keeping flows destined to ``port``."""
    records: List[FlowStatsRecord] = []
    for flow_id, st in monitor.get_flow_stats().items():
        tup = monitor.find_flow(flow_id)
        if tup.destination_port != port:
            continue
        records.append(FlowStatsRecord(
            flow_id=flow_id,
            source_address=tup.source_address,
            destination_address=tup.destination_address,
            tx_packets=st.tx_packets,
            rx_packets=st.rx_packets,
            tx_bytes=st.tx_bytes,
            rx_bytes=st.rx_bytes,
            delivery_ratio=delivery_ratio(st.tx_packets, st.rx_packets),
            avg_latency_ms=avg_latency_ms(st.delay_sum, st.rx_packets),
            avg_throughput_kbps=avg_throughput_kbps(st.rx_bytes, st.time_first_tx_packet, st.time_last_rx_packet),
        ))
    return records


# ---------------------- persistence ----------------------
def dataset_path(output_dir: str, packet_size: int) -> str:
    return os.path.join(output_dir, f"hierarchical_manet_stats_packetSize_{packet_size}.csv")


def _row(run: RunRecord, rec: FlowStatsRecord) -> List[str]:
    return [
        str(run.run_number),
        str(run.nodes_per_cluster),
        f"{run.sim_time:g}",
        f"{run.area_size:g}",
        f"{run.follower_speed:g}",
        f"{run.noise_factor:g}",
        str(run.packet_size),
        str(rec.flow_id),
        rec.source_address,
        rec.destination_address,
        str(rec.tx_packets),
        str(rec.rx_packets),
        str(rec.tx_bytes),
        str(rec.rx_bytes),
        f"{rec.delivery_ratio:.2f}",
        f"{rec.avg_latency_ms:.2f}",
        f"{rec.avg_throughput_kbps:.2f}",
    ]


def append_flow_stats(path: str, run: RunRecord, records: Sequence[FlowStatsRecord]) -> int:
    """Append one row per flow; the header is written only when the file is new.

    Returns the number of rows written. Open failures propagate.
    """
    write_header = not os.path.exists(path)
    with open(path, "a", newline="") as fh:
        writer = csv.writer(fh)
        if write_header:
            writer.writerow(CSV_HEADER)
        for rec in records:
            writer.writerow(_row(run, rec))
    return len(records)


def load_dataset(path: str) -> List[Dict[str, str]]:
    with open(path, newline="") as fh:
        return list(csv.DictReader(fh))


def summarize_dataset(rows: Sequence[Dict[str, str]]) -> Dict[int, Dict[str, float]]:
    """Per-run mean delivery ratio, latency and throughput over all flows."""
    by_run: Dict[int, List[Tuple[float, float, float]]] = {}
    for row in rows:
        by_run.setdefault(int(row["RunNumber"]), []).append((
            float(row["PacketDeliveryRatio"]),
            float(row["AvgLatency_ms"]),
            float(row["AvgThroughput_kbps"]),
        ))
    summary: Dict[int, Dict[str, float]] = {}
    for run_number, values in sorted(by_run.items()):
        arr = np.array(values)
        summary[run_number] = {
            "flows": float(len(values)),
            "mean_pdr": float(np.mean(arr[:, 0])),
            "mean_latency_ms": float(np.mean(arr[:, 1])),
            "mean_throughput_kbps": float(np.mean(arr[:, 2])),
        }
    return summary


def print_flow_summary(run: RunRecord, records: Sequence[FlowStatsRecord]) -> None:
    """Console view of one run's telemetry flows."""
    print(f"\n=== Run {run.run_number} (seed={run.seed}) ===")
    for rec in records:
        print(f"- Flow {rec.flow_id} ({rec.source_address} -> {rec.destination_address}): "
              f"tx={rec.tx_packets} rx={rec.rx_packets} pdr={rec.delivery_ratio:.2f}% "
              f"lat={rec.avg_latency_ms:.2f}ms thr={rec.avg_throughput_kbps:.2f}kbps")
