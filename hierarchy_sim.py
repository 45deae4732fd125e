import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from event_sim import EventScheduler
from telemetry_net import FlowMonitor, TelemetryNetwork


# --------------------------
# Public API dataclasses
# --------------------------


LEADER_MOBILITY_MODES = ("formation", "random_waypoint")


@dataclass
class SimulationConfig:
    """Configuration parameters for the hierarchical MANET simulation."""
    # Hierarchy
    nodes_per_cluster: int = 5  # leader + (N-1) followers per cluster

    # Area and timing
    area_size: float = 200.0
    sim_time: float = 160.0
    dt: float = 0.1

    # Follower dynamics
    follower_speed: float = 1.5
    noise_factor: float = 1.0

    # Super-leader start waypoint
    super_leader_start: Tuple[float, float] = (50.0, 50.0)

    # Cluster-leader mobility: formation-locked (default) or independent random waypoint
    leader_mobility: str = "formation"
    leader_speed_range: Tuple[float, float] = (0.5, 1.5)
    leader_pause: float = 5.0

    # Telemetry traffic
    packet_size: int = 1024
    data_rate_kbps: float = 256.0
    comm_range: float = 250.0
    enable_traffic: bool = True

    # Randomness
    seed: Optional[int] = None

    # Diagnostics
    record_history: bool = False
    log: bool = False

    def validate(self) -> None:
        """Raise ValueError for configurations the simulation cannot represent."""
        if int(self.nodes_per_cluster) != self.nodes_per_cluster or self.nodes_per_cluster < 1:
            raise ValueError(f"nodes_per_cluster must be an integer >= 1, got {self.nodes_per_cluster}")
        for name in ("sim_time", "dt", "area_size", "comm_range", "data_rate_kbps"):
            value = getattr(self, name)
            if not (math.isfinite(value) and value > 0):
                raise ValueError(f"{name} must be finite and > 0, got {value}")
        if int(self.packet_size) != self.packet_size or self.packet_size < 1:
            raise ValueError(f"packet_size must be a positive integer, got {self.packet_size}")
        if not (math.isfinite(self.follower_speed) and self.follower_speed >= 0):
            raise ValueError(f"follower_speed must be finite and >= 0, got {self.follower_speed}")
        if not (math.isfinite(self.noise_factor) and self.noise_factor >= 0):
            raise ValueError(f"noise_factor must be finite and >= 0, got {self.noise_factor}")
        if self.leader_mobility not in LEADER_MOBILITY_MODES:
            raise ValueError(
                f"leader_mobility must be one of {LEADER_MOBILITY_MODES}, got {self.leader_mobility!r}"
            )


@dataclass
class SimulationResult:
    """Results from a hierarchical MANET simulation run."""
    final_time: float
    num_ticks: int
    num_nodes: int
    super_leader_waypoints: List["Waypoint"]
    final_positions: Dict[int, Tuple[float, float, float]]
    monitor: FlowMonitor
    network: Optional[TelemetryNetwork]
    history: List[np.ndarray] = field(default_factory=list)


# --------------------------
# Vector math
# --------------------------


def normalize(v: np.ndarray) -> np.ndarray:
    """Unit vector along ``v``; the zero vector when ``|v| == 0``."""
    mag = math.sqrt(float(np.dot(v, v)))
    if mag == 0.0:
        return np.zeros(3)
    return v / mag


def vec3(x: float, y: float, z: float = 0.0) -> np.ndarray:
    return np.array([x, y, z], dtype=float)


# --------------------------
# Trajectory (super-leader)
# --------------------------


@dataclass(frozen=True)
class Waypoint:
    time: float
    position: Tuple[float, float, float]


def sample_super_leader_trajectory(sim_time: float, area_size: float, rng: np.random.Generator,
                                   start: Tuple[float, float] = (50.0, 50.0)) -> List[Waypoint]:
    """Start waypoint at t=0 plus one relocation at a time drawn from [T/2, T].

    The relocation target is uniform over the square area. Draw order (time, x, y)
    is fixed so a given generator state always yields the same trajectory.
    """
    move_time = float(rng.uniform(sim_time / 2.0, sim_time))
    x = float(rng.uniform(0.0, area_size))
    y = float(rng.uniform(0.0, area_size))
    return [
        Waypoint(0.0, (float(start[0]), float(start[1]), 0.0)),
        Waypoint(move_time, (x, y, 0.0)),
    ]


class WaypointMobility:
    """Position provider following timestamped waypoints.

    Linear interpolation between consecutive waypoints; holds the first waypoint
    before its time and the last one afterwards.
    """

    def __init__(self, waypoints: List[Waypoint]):
        if not waypoints:
            raise ValueError("at least one waypoint is required")
        for a, b in zip(waypoints, waypoints[1:]):
            if not b.time > a.time:
                raise ValueError(f"waypoint times must be strictly increasing ({a.time} -> {b.time})")
        self.waypoints = list(waypoints)

    def position_at(self, t: float) -> np.ndarray:
        wps = self.waypoints
        if t <= wps[0].time:
            return np.array(wps[0].position, dtype=float)
        for a, b in zip(wps, wps[1:]):
            if t < b.time:
                frac = (t - a.time) / (b.time - a.time)
                pa = np.array(a.position, dtype=float)
                pb = np.array(b.position, dtype=float)
                return pa + (pb - pa) * frac
        return np.array(wps[-1].position, dtype=float)


class RandomWaypointMobility:
    """Independent random-waypoint motion, used for the non-default leader mode."""

    def __init__(self, start: np.ndarray, area_size: float, speed_range: Tuple[float, float],
                 pause: float, rng: np.random.Generator):
        self.pos = start.copy()
        self.area_size = area_size
        self.speed_range = speed_range
        self.pause = pause
        self.rng = rng
        self._target: Optional[np.ndarray] = None
        self._speed = 0.0
        self._pause_until = 0.0

    def _pick_new_waypoint(self) -> None:
        self._target = vec3(self.rng.uniform(0.0, self.area_size), self.rng.uniform(0.0, self.area_size))
        self._speed = float(self.rng.uniform(*self.speed_range))

    def advance(self, t: float, dt: float) -> np.ndarray:
        if t < self._pause_until:
            return self.pos
        if self._target is None:
            self._pick_new_waypoint()
        delta = self._target - self.pos
        dist = float(np.linalg.norm(delta))
        step = self._speed * dt
        if step >= dist:
            self.pos = self._target.copy()
            self._target = None
            self._pause_until = t + self.pause
        else:
            self.pos = self.pos + delta * (step / dist)
        return self.pos


# --------------------------
# Formation model
# --------------------------


FORMATION_OFFSETS: Dict[str, np.ndarray] = {
    "A": vec3(-50.0, -50.0),  # bottom-left of the super-leader
    "B": vec3(50.0, 50.0),    # top-right of the super-leader
}


def formation_position(cluster: str, super_leader_pos: np.ndarray) -> np.ndarray:
    return super_leader_pos + FORMATION_OFFSETS[cluster]


# --------------------------
# Steering integrator
# --------------------------


def steer_follower(pos: np.ndarray, leader_pos: np.ndarray, speed: float, noise_factor: float,
                   dt: float, rng: np.random.Generator) -> np.ndarray:
    """One explicit Euler step of a follower toward its leader.

    velocity = unit(leader - pos) * speed + (U(-k, k), U(-k, k), 0). The noise is
    not clamped, so |velocity| may exceed ``speed``, and large ``speed * dt`` can
    overshoot the leader.
    """
    unit = normalize(leader_pos - pos)
    noise = vec3(rng.uniform(-noise_factor, noise_factor), rng.uniform(-noise_factor, noise_factor))
    velocity = unit * speed + noise
    return pos + velocity * dt


# --------------------------
# Internal helper types
# --------------------------


class Node:
    def __init__(self, nid: int, role: str, cluster: Optional[str], pos: np.ndarray):
        self.nid = nid
        self.role = role  # super_leader, cluster_leader, follower
        self.cluster = cluster
        self.pos = pos.copy()

    def __repr__(self) -> str:
        return f"Node({self.nid}, {self.role}, cluster={self.cluster}, pos={self.pos.tolist()})"


class HierarchicalManet:
    """Three-level leader/follower MANET driven by an explicit event loop."""

    def __init__(self, config: SimulationConfig):
        """Initialize the simulation with the given configuration."""
        config.validate()
        self.cfg = config
        self.dt = self.cfg.dt
        self.reset()

    # ---------------------- build ----------------------
    def _build_hierarchy(self) -> None:
        """Create super-leader (0), leaders A (1) and B (2), then followers of A and B."""
        start = vec3(*self.cfg.super_leader_start)
        self.super_leader = Node(0, "super_leader", None, start)
        self.cluster_leaders: Dict[str, Node] = {
            c: Node(i + 1, "cluster_leader", c, formation_position(c, start))
            for i, c in enumerate(("A", "B"))
        }
        self.followers: Dict[str, List[Node]] = {"A": [], "B": []}
        nid = 3
        for c in ("A", "B"):
            for _ in range(int(self.cfg.nodes_per_cluster) - 1):
                # followers start at the origin, like a constant-position model with no allocator
                self.followers[c].append(Node(nid, "follower", c, np.zeros(3)))
                nid += 1

    @property
    def nodes(self) -> List[Node]:
        return [self.super_leader, *self.cluster_leaders.values(),
                *self.followers["A"], *self.followers["B"]]

    # ---------------------- public API ----------------------
    def reset(self, seed: Optional[int] = None) -> None:
        """Reset simulation state for a new run with optional new seed."""
        if seed is not None:
            self.cfg.seed = seed
        self.rng = np.random.default_rng(self.cfg.seed)
        self.scheduler = EventScheduler(stop_time=self.cfg.sim_time)
        self.tick_idx = 0
        self.history: List[np.ndarray] = []
        self._renderer: Optional[_Renderer] = None

        self.waypoints = sample_super_leader_trajectory(
            self.cfg.sim_time, self.cfg.area_size, self.rng, start=self.cfg.super_leader_start
        )
        self.super_leader_mobility = WaypointMobility(self.waypoints)
        self._build_hierarchy()

        self.leader_walkers: Dict[str, RandomWaypointMobility] = {}
        if self.cfg.leader_mobility == "random_waypoint":
            for c, leader in self.cluster_leaders.items():
                leader.pos = vec3(self.rng.uniform(0.0, self.cfg.area_size), self.rng.uniform(0.0, self.cfg.area_size))
                self.leader_walkers[c] = RandomWaypointMobility(
                    leader.pos, self.cfg.area_size, self.cfg.leader_speed_range, self.cfg.leader_pause, self.rng
                )

        self.monitor = FlowMonitor()
        self.network: Optional[TelemetryNetwork] = None
        if self.cfg.enable_traffic:
            self.network = TelemetryNetwork(self.scheduler, self.nodes, self.cfg, self.rng, self.monitor)
        if self.cfg.record_history:
            self._record()

    def start_mobility(self) -> None:
        """Schedule the first mobility tick at t = dt."""
        self.scheduler.schedule_at(self.dt, self._mobility_tick)

    def run(self, headless: bool = True, max_time: Optional[float] = None) -> SimulationResult:
        """Run until the configured stop time (or ``max_time`` if earlier) and return results.

        A simulation that has already run is reset first, so repeated calls replay
        the same seeded run.
        """
        if self.scheduler.now > 0.0 or self.scheduler.pending():
            self.reset()
        if max_time is not None:
            self.scheduler.stop_time = min(self.cfg.sim_time, max_time)
        renderer = None
        if not headless:
            renderer = _Renderer(self)
            renderer.setup()
        self._renderer = renderer

        self.start_mobility()
        if self.network is not None:
            self.network.install()
        final_time = self.scheduler.run()

        return SimulationResult(
            final_time=final_time,
            num_ticks=self.tick_idx,
            num_nodes=len(self.nodes),
            super_leader_waypoints=list(self.waypoints),
            final_positions={n.nid: tuple(float(v) for v in n.pos) for n in self.nodes},
            monitor=self.monitor,
            network=self.network,
            history=list(self.history),
        )

    def positions(self) -> np.ndarray:
        """(num_nodes, 3) array of current positions ordered by node id."""
        return np.vstack([n.pos for n in self.nodes])

    # ---------------------- core step logic ----------------------
    def step(self) -> None:
        """One mobility update: super-leader, then cluster leaders, then followers."""
        t = self.scheduler.now
        self.super_leader.pos = self.super_leader_mobility.position_at(t)

        for c, leader in self.cluster_leaders.items():
            if self.cfg.leader_mobility == "formation":
                leader.pos = formation_position(c, self.super_leader.pos)
            else:
                leader.pos = self.leader_walkers[c].advance(t, self.dt).copy()

        for c, followers in self.followers.items():
            leader_pos = self.cluster_leaders[c].pos
            for f in followers:
                f.pos = steer_follower(f.pos, leader_pos, self.cfg.follower_speed,
                                       self.cfg.noise_factor, self.dt, self.rng)

    def _mobility_tick(self) -> None:
        self.step()
        self.tick_idx += 1
        if self.cfg.record_history:
            self._record()
        if self.cfg.log and self.tick_idx % max(1, int(round(10.0 / self.dt))) == 0:
            sl = self.super_leader.pos
            print(f"[t={self.scheduler.now:.1f}] super-leader at ({sl[0]:.1f}, {sl[1]:.1f})")
        if self._renderer is not None and self._renderer.should_draw(self.scheduler.now):
            self._renderer.draw(self.scheduler.now)
        # absolute tick times so the k-th tick lands on k*dt without accumulated drift
        self.scheduler.schedule_at((self.tick_idx + 1) * self.dt, self._mobility_tick)

    def _record(self) -> None:
        self.history.append(self.positions())


class _Renderer:
    """Matplotlib-based live view of the hierarchy."""

    def __init__(self, sim: HierarchicalManet):
        """Initialize renderer with simulation reference."""
        self.sim = sim
        self.fig = None
        self.ax = None
        self.next_plot_time = 0.0
        self.plot_every = 0.5

    def setup(self) -> None:
        """Initialize matplotlib figure and axes."""
        import matplotlib.pyplot as plt  # local import to avoid headless penalty

        plt.ion()
        self.plt = plt
        self.fig, self.ax = plt.subplots(figsize=(7, 7))

    def should_draw(self, t: float) -> bool:
        """Check if it's time to redraw the visualization."""
        return t >= self.next_plot_time

    def draw(self, t: float) -> None:
        """Draw current simulation state to matplotlib figure."""
        ax = self.ax
        sim = self.sim
        margin = 80.0
        ax.clear()
        ax.set_xlim(-margin, sim.cfg.area_size + margin)
        ax.set_ylim(-margin, sim.cfg.area_size + margin)
        ax.set_aspect('equal')
        ax.set_title(f"t={t:.1f}s  leaders={sim.cfg.leader_mobility}")

        sl = sim.super_leader.pos
        ax.scatter([sl[0]], [sl[1]], c='black', s=140, marker='*', label='Super-leader', zorder=10)
        colors = {"A": 'tab:blue', "B": 'tab:red'}
        for c, leader in sim.cluster_leaders.items():
            ax.scatter([leader.pos[0]], [leader.pos[1]], c=colors[c], s=100, marker='s',
                       label=f'Leader {c}', zorder=9)
            ax.plot([sl[0], leader.pos[0]], [sl[1], leader.pos[1]], c='lightgray', linewidth=0.8, zorder=1)
            xs = [f.pos[0] for f in sim.followers[c]]
            ys = [f.pos[1] for f in sim.followers[c]]
            if xs:
                ax.scatter(xs, ys, c=colors[c], s=25, alpha=0.7, zorder=8)
            for f in sim.followers[c]:
                ax.text(f.pos[0] + 2.0, f.pos[1] + 2.0, f"{f.nid}", fontsize=6, color='k', zorder=11)

        ax.legend(loc='upper right', fontsize=8, framealpha=0.8)
        self.plt.pause(0.001)
        self.next_plot_time = t + self.plot_every
