from hierarchy_sim import SimulationConfig, HierarchicalManet

cfg = SimulationConfig(
    nodes_per_cluster=5,
    sim_time=160.0,
    area_size=200.0,
    follower_speed=1.5,
    noise_factor=1.0,
    seed=1,                      # optional for determinism
    leader_mobility="formation", # formation|random_waypoint
)
sim = HierarchicalManet(cfg)
# Headless fast run to the configured duration
#result = sim.run(headless=True)
#print(result.num_ticks, result.final_positions)
# Visual run
sim.reset(seed=1)
result_viz = sim.run(headless=False)
