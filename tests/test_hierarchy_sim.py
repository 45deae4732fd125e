import numpy as np
import pytest

from flow_stats import collect_flow_stats
from hierarchy_sim import FORMATION_OFFSETS, HierarchicalManet, SimulationConfig
from telemetry_net import CONTROL_PORT, TELEMETRY_PORT


def _quiet_cfg(**kw) -> SimulationConfig:
    base = dict(nodes_per_cluster=3, sim_time=10.0, enable_traffic=False, seed=1)
    base.update(kw)
    return SimulationConfig(**base)


def test_hierarchy_sizes():
    sim = HierarchicalManet(_quiet_cfg(nodes_per_cluster=3))
    assert len(sim.nodes) == 7
    assert [len(sim.followers[c]) for c in ("A", "B")] == [2, 2]
    assert [n.nid for n in sim.nodes] == list(range(7))
    assert all(f.cluster == "A" for f in sim.followers["A"])
    assert {c: l.cluster for c, l in sim.cluster_leaders.items()} == {"A": "A", "B": "B"}

    single = HierarchicalManet(_quiet_cfg(nodes_per_cluster=1))
    assert len(single.nodes) == 3
    assert single.followers == {"A": [], "B": []}
    assert single.run().num_ticks > 0


@pytest.mark.parametrize("field,value", [
    ("nodes_per_cluster", 0),
    ("nodes_per_cluster", -2),
    ("sim_time", 0.0),
    ("dt", -0.1),
    ("area_size", 0.0),
    ("follower_speed", -1.0),
    ("noise_factor", -0.5),
    ("packet_size", 0),
    ("leader_mobility", "teleport"),
    ("sim_time", float("inf")),
    ("dt", float("nan")),
    ("follower_speed", float("nan")),
    ("noise_factor", float("nan")),
    ("noise_factor", float("inf")),
])
def test_invalid_configuration_is_rejected(field, value):
    cfg = _quiet_cfg(**{field: value})
    with pytest.raises(ValueError):
        HierarchicalManet(cfg)


def test_ten_ticks_formation_and_convergence():
    # tiny area keeps the super-leader almost still during the first second
    cfg = _quiet_cfg(
        nodes_per_cluster=3, sim_time=150.0, area_size=1.0, super_leader_start=(0.5, 0.5),
        noise_factor=0.0, follower_speed=1.5, record_history=True,
    )
    sim = HierarchicalManet(cfg)
    result = sim.run(max_time=1.0)

    assert result.num_ticks == 10
    assert len(result.history) == 11
    for snap in result.history:
        assert np.array_equal(snap[1], snap[0] + FORMATION_OFFSETS["A"])
        assert np.array_equal(snap[2], snap[0] + FORMATION_OFFSETS["B"])

    followers = {"A": (1, [3, 4]), "B": (2, [5, 6])}
    for leader_idx, follower_idxs in followers.values():
        for fi in follower_idxs:
            dists = [np.linalg.norm(s[fi] - s[leader_idx]) for s in result.history]
            assert all(b < a for a, b in zip(dists, dists[1:]))
            assert dists[-1] < dists[0]


def test_same_seed_is_bit_for_bit_reproducible():
    cfg_kw = dict(nodes_per_cluster=4, sim_time=12.0, enable_traffic=True, record_history=True, seed=3)
    a = HierarchicalManet(SimulationConfig(**cfg_kw)).run()
    b = HierarchicalManet(SimulationConfig(**cfg_kw)).run()
    assert a.super_leader_waypoints == b.super_leader_waypoints
    assert len(a.history) == len(b.history)
    assert all(np.array_equal(x, y) for x, y in zip(a.history, b.history))
    assert collect_flow_stats(a.monitor) == collect_flow_stats(b.monitor)

    c = HierarchicalManet(SimulationConfig(**dict(cfg_kw, seed=4))).run()
    assert c.super_leader_waypoints != a.super_leader_waypoints


def test_reset_restores_initial_state():
    sim = HierarchicalManet(_quiet_cfg(record_history=True))
    first = sim.run()
    sim.reset(seed=1)
    second = sim.run()
    assert all(np.array_equal(x, y) for x, y in zip(first.history, second.history))
    assert first.num_ticks == second.num_ticks


def test_second_run_replays_the_first():
    sim = HierarchicalManet(_quiet_cfg(record_history=True, enable_traffic=True))
    first = sim.run()
    second = sim.run()
    assert first.num_ticks == second.num_ticks == 100
    assert all(np.array_equal(x, y) for x, y in zip(first.history, second.history))
    assert collect_flow_stats(first.monitor) == collect_flow_stats(second.monitor)


@pytest.mark.parametrize("sim_time", [0.3, 0.6, 0.7, 1.2, 1.4, 2.3])
def test_tick_at_stop_time_fires_for_fractional_durations(sim_time):
    result = HierarchicalManet(_quiet_cfg(sim_time=sim_time, record_history=True)).run()
    assert result.num_ticks == round(sim_time / 0.1)
    assert len(result.history) == result.num_ticks + 1


def test_random_waypoint_leaders_move_independently():
    cfg = _quiet_cfg(leader_mobility="random_waypoint", record_history=True, area_size=300.0)
    result = HierarchicalManet(cfg).run()
    offsets = [snap[1] - snap[0] for snap in result.history]
    assert any(not np.allclose(o, FORMATION_OFFSETS["A"]) for o in offsets)
    for snap in result.history:
        assert np.all(snap[1:3, :2] >= 0.0) and np.all(snap[1:3, :2] <= 300.0)


def test_telemetry_flows_reach_leaders():
    cfg = SimulationConfig(nodes_per_cluster=3, sim_time=10.0, comm_range=1e6, seed=2)
    result = HierarchicalManet(cfg).run()

    all_flows = result.monitor.get_flow_stats()
    ports = sorted(result.monitor.find_flow(fid).destination_port for fid in all_flows)
    assert ports == [TELEMETRY_PORT] * 4 + [CONTROL_PORT] * 2

    flows = collect_flow_stats(result.monitor)
    assert [f.flow_id for f in flows] == [3, 4, 5, 6]
    assert [f.source_address for f in flows] == ["10.1.1.2", "10.1.1.3", "10.1.2.2", "10.1.2.3"]
    assert [f.destination_address for f in flows] == ["10.1.1.1"] * 2 + ["10.1.2.1"] * 2
    for f in flows:
        # 256 kbps of 1024-byte packets between t=2 s and t=8 s
        assert f.tx_packets == 188
        assert f.rx_packets == f.tx_packets
        assert f.tx_bytes == 188 * 1024
        assert f.delivery_ratio == 100.0
        assert 1.2 < f.avg_latency_ms < 3.5
        assert 240.0 < f.avg_throughput_kbps < 270.0


def test_out_of_range_followers_lose_packets():
    cfg = SimulationConfig(nodes_per_cluster=2, sim_time=10.0, comm_range=1e-6,
                           super_leader_start=(150.0, 150.0), seed=2)
    result = HierarchicalManet(cfg).run()
    flows = collect_flow_stats(result.monitor)
    assert len(flows) == 2
    assert all(f.rx_packets == 0 and f.delivery_ratio == 0.0 for f in flows)
    assert all(f.avg_latency_ms == 0.0 and f.avg_throughput_kbps == 0.0 for f in flows)
