"""
Minimal network collaborator for the hierarchical MANET simulation.

Provides just enough of a network layer to produce per-flow counters:
subnet addressing, constant-rate UDP telemetry sources on the followers,
sinks on the cluster leaders, periodic backbone control beacons, and a flow
monitor that classifies packets by five-tuple. A packet is delivered when the
receiver is within ``comm_range`` at send time; there is no path loss model,
no routing and no real transport.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import numpy as np

from event_sim import EventScheduler


UDP_PROTOCOL = 17
TELEMETRY_PORT = 9
CONTROL_PORT = 698
EPHEMERAL_PORT_BASE = 49153

BACKBONE_SUBNET = "192.168.1"
CLUSTER_SUBNETS = {"A": "10.1.1", "B": "10.1.2"}

LINK_RATE_BPS = 6.5e6          # PHY rate used for serialization delay
PROP_SPEED_MPS = 3e8
MAX_JITTER_S = 0.002

SINK_START_S = 1.0
SOURCE_START_S = 2.0
SOURCE_STOP_MARGIN_S = 2.0     # sources stop this long before the run ends
BEACON_PERIOD_S = 2.0
BEACON_SIZE_BYTES = 64


@dataclass(frozen=True)
class FiveTuple:
    source_address: str
    destination_address: str
    protocol: int
    source_port: int
    destination_port: int


@dataclass
class FlowStats:
    """Raw counters for one flow, filled in while the run executes."""
    tx_packets: int = 0
    rx_packets: int = 0
    tx_bytes: int = 0
    rx_bytes: int = 0
    lost_packets: int = 0
    delay_sum: float = 0.0  # seconds
    time_first_tx_packet: Optional[float] = None
    time_last_tx_packet: Optional[float] = None
    time_first_rx_packet: Optional[float] = None
    time_last_rx_packet: Optional[float] = None


class FlowMonitor:
    """Assigns flow ids by five-tuple (starting at 1) and accumulates counters."""

    def __init__(self):
        self._ids: Dict[FiveTuple, int] = {}
        self._tuples: Dict[int, FiveTuple] = {}
        self.stats: Dict[int, FlowStats] = {}

    def classify(self, tup: FiveTuple) -> int:
        flow_id = self._ids.get(tup)
        if flow_id is None:
            flow_id = len(self._ids) + 1
            self._ids[tup] = flow_id
            self._tuples[flow_id] = tup
            self.stats[flow_id] = FlowStats()
        return flow_id

    def find_flow(self, flow_id: int) -> FiveTuple:
        return self._tuples[flow_id]

    def record_tx(self, tup: FiveTuple, size: int, t: float) -> int:
        flow_id = self.classify(tup)
        st = self.stats[flow_id]
        st.tx_packets += 1
        st.tx_bytes += size
        if st.time_first_tx_packet is None:
            st.time_first_tx_packet = t
        st.time_last_tx_packet = t
        return flow_id

    def record_rx(self, flow_id: int, size: int, t: float, sent_at: float) -> None:
        st = self.stats[flow_id]
        st.rx_packets += 1
        st.rx_bytes += size
        st.delay_sum += t - sent_at
        if st.time_first_rx_packet is None:
            st.time_first_rx_packet = t
        st.time_last_rx_packet = t

    def record_loss(self, flow_id: int) -> None:
        self.stats[flow_id].lost_packets += 1

    def get_flow_stats(self) -> Dict[int, FlowStats]:
        return dict(sorted(self.stats.items()))


class TelemetryNetwork:
    """Telemetry traffic between followers and their cluster leaders.

    ``nodes`` are objects exposing ``nid``, ``role``, ``cluster`` and a mutable
    ``pos`` array; positions are read at send time, so the mobility tick and the
    traffic share the scheduler's single timeline.
    """

    def __init__(self, scheduler: EventScheduler, nodes: Sequence[Any], cfg: Any,
                 rng: np.random.Generator, monitor: Optional[FlowMonitor] = None):
        self.scheduler = scheduler
        self.nodes = list(nodes)
        self.cfg = cfg
        self.rng = rng
        self.monitor = monitor if monitor is not None else FlowMonitor()
        self.addresses: Dict[int, Dict[str, str]] = {}
        self._assign_addresses()

    # ---------------------- addressing ----------------------
    def _assign_addresses(self) -> None:
        """Backbone: super-leader .1, leaders .2/.3. Clusters: leader .1, followers from .2."""
        backbone_host = 1
        cluster_host = {c: 2 for c in CLUSTER_SUBNETS}
        for node in self.nodes:
            ifaces: Dict[str, str] = {}
            if node.role in ("super_leader", "cluster_leader"):
                ifaces["backbone"] = f"{BACKBONE_SUBNET}.{backbone_host}"
                backbone_host += 1
            if node.role == "cluster_leader":
                ifaces["cluster"] = f"{CLUSTER_SUBNETS[node.cluster]}.1"
            elif node.role == "follower":
                ifaces["cluster"] = f"{CLUSTER_SUBNETS[node.cluster]}.{cluster_host[node.cluster]}"
                cluster_host[node.cluster] += 1
            self.addresses[node.nid] = ifaces

    def address_of(self, node: Any, iface: str) -> str:
        return self.addresses[node.nid][iface]

    def _leader_of(self, cluster: str) -> Any:
        for node in self.nodes:
            if node.role == "cluster_leader" and node.cluster == cluster:
                return node
        raise KeyError(f"no leader for cluster {cluster}")

    # ---------------------- applications ----------------------
    def install(self) -> None:
        """Install telemetry sources, leader sinks and backbone beacons."""
        sim_time = self.cfg.sim_time
        source_stop = sim_time - SOURCE_STOP_MARGIN_S
        interval = self.cfg.packet_size * 8.0 / (self.cfg.data_rate_kbps * 1000.0)

        followers = [n for n in self.nodes if n.role == "follower"]
        for k, follower in enumerate(followers):
            leader = self._leader_of(follower.cluster)
            tup = FiveTuple(
                self.address_of(follower, "cluster"),
                self.address_of(leader, "cluster"),
                UDP_PROTOCOL,
                EPHEMERAL_PORT_BASE + k,
                TELEMETRY_PORT,
            )
            if SOURCE_START_S < source_stop:
                self._start_source(follower, leader, tup, interval, source_stop)

        supers = [n for n in self.nodes if n.role == "super_leader"]
        leaders = [n for n in self.nodes if n.role == "cluster_leader"]
        for sl in supers:
            for leader in leaders:
                tup = FiveTuple(
                    self.address_of(sl, "backbone"),
                    self.address_of(leader, "backbone"),
                    UDP_PROTOCOL,
                    CONTROL_PORT,
                    CONTROL_PORT,
                )
                self._start_beacon(sl, leader, tup)

    def _start_source(self, src: Any, dst: Any, tup: FiveTuple, interval: float, stop: float) -> None:
        count = [0]

        def send_next() -> None:
            self.send(src, dst, tup, self.cfg.packet_size)
            count[0] += 1
            nxt = SOURCE_START_S + count[0] * interval
            if nxt < stop:
                self.scheduler.schedule_at(nxt, send_next)

        self.scheduler.schedule_at(SOURCE_START_S, send_next)

    def _start_beacon(self, src: Any, dst: Any, tup: FiveTuple) -> None:
        def beacon() -> None:
            self.send(src, dst, tup, BEACON_SIZE_BYTES)
            self.scheduler.schedule(BEACON_PERIOD_S, beacon)

        self.scheduler.schedule_at(SINK_START_S, beacon)

    # ---------------------- packet path ----------------------
    def send(self, src: Any, dst: Any, tup: FiveTuple, size: int) -> None:
        now = self.scheduler.now
        flow_id = self.monitor.record_tx(tup, size, now)
        dist = float(np.linalg.norm(dst.pos - src.pos))
        if dist > self.cfg.comm_range:
            self.monitor.record_loss(flow_id)
            if self.cfg.log:
                print(f"[t={now:.1f}] flow {flow_id} drop: {tup.source_address} -> "
                      f"{tup.destination_address} out of range ({dist:.1f} m)")
            return
        delay = size * 8.0 / LINK_RATE_BPS + dist / PROP_SPEED_MPS + self.rng.uniform(0.0, MAX_JITTER_S)

        def deliver() -> None:
            self.monitor.record_rx(flow_id, size, self.scheduler.now, now)

        self.scheduler.schedule(delay, deliver)
