import csv
from pathlib import Path

import pytest

import experiments
from experiments import plot_run_summary, run_experiments
from flow_stats import dataset_path
from hierarchy_sim import SimulationConfig


def _small_cfg(**kw) -> SimulationConfig:
    base = dict(nodes_per_cluster=2, sim_time=6.0, packet_size=512)
    base.update(kw)
    return SimulationConfig(**base)


def _rows(path: str):
    with open(path, newline="") as fh:
        return list(csv.reader(fh))


def test_seeds_follow_run_index(tmp_path: Path):
    results = run_experiments(_small_cfg(), num_runs=3, output_dir=str(tmp_path))
    assert [run.run_number for run, _ in results] == [1, 2, 3]
    assert [run.seed for run, _ in results] == [1, 2, 3]
    assert all(len(flows) == 2 for _, flows in results)

    rows = _rows(dataset_path(str(tmp_path), 512))
    assert [r[0] for r in rows[1:]] == ["1", "1", "2", "2", "3", "3"]


def test_repeated_invocations_append(tmp_path: Path):
    cfg = _small_cfg()
    run_experiments(cfg, num_runs=1, output_dir=str(tmp_path))
    path = dataset_path(str(tmp_path), cfg.packet_size)
    first = _rows(path)
    run_experiments(cfg, num_runs=1, output_dir=str(tmp_path))
    second = _rows(path)

    assert sum(1 for r in second if r[0] == "RunNumber") == 1
    assert len(second) == 1 + 2 * (len(first) - 1)
    # same seed, same configuration: the second block repeats the first
    assert second[len(first):] == first[1:]


def test_packet_size_selects_dataset(tmp_path: Path):
    run_experiments(_small_cfg(packet_size=256), num_runs=1, output_dir=str(tmp_path))
    run_experiments(_small_cfg(packet_size=1024), num_runs=1, output_dir=str(tmp_path))
    names = sorted(p.name for p in tmp_path.glob("*.csv"))
    assert names == ["hierarchical_manet_stats_packetSize_1024.csv",
                     "hierarchical_manet_stats_packetSize_256.csv"]


def test_invalid_run_count_and_config(tmp_path: Path):
    with pytest.raises(ValueError):
        run_experiments(_small_cfg(), num_runs=0, output_dir=str(tmp_path))
    with pytest.raises(ValueError):
        run_experiments(_small_cfg(nodes_per_cluster=0), num_runs=1, output_dir=str(tmp_path))
    assert list(tmp_path.iterdir()) == []


def test_output_failure_aborts(tmp_path: Path):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("x")
    with pytest.raises(OSError):
        run_experiments(_small_cfg(), num_runs=2, output_dir=str(blocker))


def test_main_runs_and_plots(tmp_path: Path):
    code = experiments.main([
        "--nodesPerCluster", "2", "--simTime", "6", "--packetSize", "512",
        "--numRuns", "2", "--outputDir", str(tmp_path), "--plot",
    ])
    assert code == 0
    assert (tmp_path / "hierarchical_manet_stats_packetSize_512.csv").exists()
    assert (tmp_path / "hierarchical_manet_stats_packetSize_512.png").exists()


def test_main_rejects_bad_configuration(tmp_path: Path, capsys):
    with pytest.raises(SystemExit) as exc:
        experiments.main(["--nodesPerCluster", "0", "--outputDir", str(tmp_path)])
    assert exc.value.code == 2
    assert "nodes_per_cluster" in capsys.readouterr().err

    with pytest.raises(SystemExit) as exc:
        experiments.main(["--simTime", "inf", "--outputDir", str(tmp_path)])
    assert exc.value.code == 2
    assert "sim_time" in capsys.readouterr().err


def test_main_reports_output_failure(tmp_path: Path, capsys):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    code = experiments.main(["--simTime", "6", "--outputDir", str(blocker)])
    assert code == 1
    assert "cannot write statistics" in capsys.readouterr().err


def test_plot_run_summary(tmp_path: Path):
    run_experiments(_small_cfg(), num_runs=2, output_dir=str(tmp_path))
    out = plot_run_summary(dataset_path(str(tmp_path), 512), str(tmp_path / "summary.png"))
    assert Path(out).exists()
