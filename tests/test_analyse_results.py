import pandas as pd
import pytest

from analysis.analyse_results import cluster_over_time, load_results, summarise_utilisation


@pytest.fixture
def results(tmp_path):
    events = pd.DataFrame([
        dict(event_index=0, time=0, action="arrival", task_id=1, active_tasks=1, active_vms=1),
        dict(event_index=1, time=10, action="arrival", task_id=2, active_tasks=2, active_vms=2),
    ])
    machines = pd.DataFrame([
        dict(event_index=0, machine_id=0, cpu="X86", active_tasks=1, memory_used=100, num_cores=4,
             memory_size=1000, vms=1, CPU_utilisation=0.25, memory_utilisation=0.1),
        dict(event_index=0, machine_id=1, cpu="X86", active_tasks=0, memory_used=0, num_cores=4,
             memory_size=1000, vms=0, CPU_utilisation=0.0, memory_utilisation=0.0),
        dict(event_index=1, machine_id=0, cpu="X86", active_tasks=1, memory_used=100, num_cores=4,
             memory_size=1000, vms=1, CPU_utilisation=0.25, memory_utilisation=0.1),
        dict(event_index=1, machine_id=1, cpu="X86", active_tasks=1, memory_used=300, num_cores=4,
             memory_size=1000, vms=1, CPU_utilisation=0.25, memory_utilisation=0.3),
    ])
    events.to_parquet(tmp_path / "events.parquet", index=False)
    machines.to_parquet(tmp_path / "machines.parquet", index=False)
    return load_results(tmp_path / "events.parquet", tmp_path / "machines.parquet")


def test_load_results_attaches_event_time(results):
    assert len(results) == 4
    assert list(results["time"]) == [0, 0, 10, 10]


def test_summarise_utilisation(results):
    summary = summarise_utilisation(results)
    assert summary["avg_cpu_utilisation"] == pytest.approx(0.1875)
    assert summary["avg_memory_utilisation"] == pytest.approx(0.125)
    assert summary["peak_active_tasks"] == 2
    assert summary["peak_active_vms"] == 2


def test_summarise_empty_results():
    assert summarise_utilisation(pd.DataFrame())["peak_active_tasks"] == 0


def test_cluster_over_time(results):
    cluster = cluster_over_time(results)
    assert list(cluster["tasks_on_machines"]) == [1, 2]
    assert list(cluster["memory_used"]) == [100, 400]
    assert list(cluster["vms"]) == [1, 2]
