import pandas as pd
import pytest

from common.models import CPUType, PowerState
from placement_scheduler.policies import LeastLoadedPlacement
from placement_scheduler.run_simulation import (create_machines, create_policy, load_config, replay_events,
                                                run_simulation)
from placement_scheduler.cluster import InMemoryCluster
from placement_scheduler.scheduler import Scheduler


CONFIG_TEXT = """
# test cluster
cluster_name = test
placement_policy = least_loaded
strict_cpu = yes
verbosity = 0

machine = X86, 2, 4, 4096, no
machine = ARM, 1, 8, 8192, yes, S5
"""


def event_rows(*tasks):
    """tasks are (task_id, cpu, memory, sla, arrival, completion)"""
    rows = []
    for task_id, cpu, memory, sla, arrival, completion in tasks:
        base = dict(task_id=task_id, required_cpu=cpu, required_vm="LINUX", gpu_capable=False, memory=memory, sla=sla)
        rows.append(dict(base, action="arrival", time=arrival))
        rows.append(dict(base, action="completion", time=completion))
    return pd.DataFrame(rows)


def test_load_config_collects_machine_lines(tmp_path):
    config_file = tmp_path / "config.txt"
    config_file.write_text(CONFIG_TEXT)
    config = load_config(config_file)
    assert config["cluster_name"] == "test"
    assert config["placement_policy"] == "least_loaded"
    assert config["machines"] == [["X86", "2", "4", "4096", "no"], ["ARM", "1", "8", "8192", "yes", "S5"]]


def test_load_config_falls_back_to_search_dirs(tmp_path, monkeypatch):
    (tmp_path / "config.txt").write_text(CONFIG_TEXT)
    monkeypatch.chdir(tmp_path.parent)
    config = load_config("config.txt", search_dirs=[tmp_path])
    assert len(config["machines"]) == 2

    with pytest.raises(FileNotFoundError):
        load_config("missing.txt", search_dirs=[tmp_path])


def test_create_machines_in_pool_order(tmp_path):
    config_file = tmp_path / "config.txt"
    config_file.write_text(CONFIG_TEXT)
    machines = create_machines(load_config(config_file))
    assert [m.machine_id for m in machines] == [0, 1, 2]
    assert [m.cpu for m in machines] == [CPUType.X86, CPUType.X86, CPUType.ARM]
    assert machines[2].gpus is True
    assert machines[2].s_state == PowerState.S5


def test_create_machines_rejects_short_lines():
    with pytest.raises(ValueError):
        create_machines({"machines": [["X86", "1", "4"]]})


def test_create_policy_from_config():
    policy = create_policy({"placement_policy": "least_loaded", "oversubscription": "2", "strict_cpu": "false"})
    assert isinstance(policy, LeastLoadedPlacement)
    assert policy.oversubscription == 2.0
    assert policy.strict_cpu is False

    with pytest.raises(ValueError):
        create_policy({"strict_cpu": "sometimes"})


def test_replay_releases_capacity_and_runs_periodic_checks():
    cluster = InMemoryCluster(create_machines({"machines": [["X86", "1", "1", "1024", "no"]]}))
    scheduler = Scheduler(cluster, create_policy({}), verbosity=-1)
    scheduler.init()
    checks = []
    scheduler.periodic_check = checks.append

    events = event_rows((1, "X86", 512, "SLA0", 0, 10), (2, "X86", 512, "SLA1", 10, 20), (3, "X86", 512, "SLA2", 15, 30))
    event_records, machine_records = replay_events(events, cluster, scheduler, periodic_check_interval=10)

    # task 2 arrives after task 1 completes, task 3 finds the only core busy
    assert scheduler.get_stats()['placed'] == 2
    assert scheduler.unallocated_tasks == [3]
    assert checks == [10, 20, 30]
    assert len(event_records) == 6
    assert len(machine_records) == 6
    assert [r['active_tasks'] for r in event_records] == [1, 0, 1, 1, 0, 0]


def test_run_simulation_end_to_end(tmp_path):
    events_file = tmp_path / "events.parquet"
    event_rows(
        (1, "X86", 1024, "SLA0", 0, 50),
        (2, "X86", 1024, "SLA1", 5, 60),
        (3, "ARM", 1024, "SLA2", 10, 70),
        (4, "POWER", 1024, "SLA0", 15, 80),
    ).to_parquet(events_file, index=False)

    config = {
        "cluster_name": "test",
        "placement_policy": "least_loaded",
        "verbosity": "0",
        "machines": [["X86", "2", "4", "4096", "no"], ["ARM", "1", "8", "8192", "no", "S5"]],
        "input_events": str(events_file),
        "output_directory": str(tmp_path / "out"),
    }
    stats = run_simulation(config)

    assert stats['placed'] == 3
    assert stats['failed_placement'] == 1
    assert stats['completed'] == 3
    assert stats['vms_shut_down'] == 3

    events_out = pd.read_parquet(tmp_path / "out" / "simulation_log_events.parquet")
    machines_out = pd.read_parquet(tmp_path / "out" / "simulation_log_machines.parquet")
    assert len(events_out) == 8
    assert len(machines_out) == 8 * 3
    assert (machines_out["memory_used"] <= machines_out["memory_size"]).all()
    # least loaded spreads the two X86 tasks over both X86 machines
    first_two = machines_out[machines_out["event_index"] == 1]
    assert list(first_two["active_tasks"]) == [1, 1, 0]
    assert "[FAIL PLACE] Task 4" in (tmp_path / "out" / "simulation.log").read_text()
