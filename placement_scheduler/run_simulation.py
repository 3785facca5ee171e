import pandas as pd
from pathlib import Path
import pyarrow.parquet as pq
import pyarrow as pa

from common.models import CPUType, PowerState, SLAType, Task, TaskEvent, VMType, parse_bool, parse_enum
from placement_scheduler.cluster import InMemoryCluster, Machine, sla_summary
from placement_scheduler.policies import get_policy_instance
from placement_scheduler.scheduler import Scheduler


def load_config(config_file="config.txt", search_dirs=()):
    """Load configuration from config file, trying each of search_dirs if it is not found as given"""
    config_paths = [Path(config_file)] + [Path(directory) / config_file for directory in search_dirs]
    config_path = next((path for path in config_paths if path.exists()), None)
    if config_path is None:
        raise FileNotFoundError(f"Config file '{config_file}' not found in any of: {[str(p) for p in config_paths]}")

    config = {}
    machine_list = []
    with open(config_path, 'r') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#'):
                continue

            if '=' in line:
                key, value = line.split('=', 1)
                key = key.strip()
                value = value.strip()
                if key == "machine":
                    parts = [p.strip() for p in value.split(",")]
                    machine_list.append(parts)
                else:
                    config[key] = value

    config["machines"] = machine_list
    return config


def _optional(config, key, convert):
    value = config.get(key)
    if value is None or value == "":
        return None
    return convert(value)


def create_policy(config):
    return get_policy_instance(
        config.get('placement_policy', 'best_slack'),
        strict_cpu=_optional(config, 'strict_cpu', parse_bool),
        oversubscription=_optional(config, 'oversubscription', float),
        allow_vm_creation=_optional(config, 'allow_vm_creation', parse_bool),
        eager_provisioning=_optional(config, 'eager_provisioning', parse_bool),
        gpu_bonus=_optional(config, 'gpu_bonus', float),
        reuse_bonus=_optional(config, 'reuse_bonus', float),
    )


def create_machines(config):
    """
    Expands `machine = cpu, count, cores, memory_mb, gpu, state` lines into machines.
    Ids follow the order of the lines, which becomes the scheduler's pool order.
    """
    machines = []
    for machine_config in config["machines"]:
        if len(machine_config) < 5:
            raise ValueError(f"Machine line needs at least 5 fields: {machine_config}")
        cpu = parse_enum(CPUType, machine_config[0])
        count = int(machine_config[1])
        cores = int(machine_config[2])
        memory = int(machine_config[3])
        gpus = parse_bool(machine_config[4])
        state = parse_enum(PowerState, machine_config[5]) if len(machine_config) > 5 else PowerState.S0

        for _ in range(count):
            machines.append(Machine(
                machine_id=len(machines),
                cpu=cpu,
                num_cores=cores,
                memory_size=memory,
                gpus=gpus,
                s_state=state,
            ))

    return machines


def task_from_row(row):
    return Task(
        task_id=int(row['task_id']),
        required_cpu=parse_enum(CPUType, row['required_cpu']),
        required_vm=parse_enum(VMType, row['required_vm']),
        gpu_capable=parse_bool(row['gpu_capable']),
        memory=int(row['memory']),
        sla=parse_enum(SLAType, row['sla']),
    )


def deliver_host_notifications(cluster, scheduler, time):
    """Pass on memory overflow and power state notifications raised by the last event."""
    for machine_id in cluster.pop_memory_warnings():
        scheduler.memory_warning(time, machine_id)
    for machine_id in cluster.pop_state_changes():
        scheduler.state_change_complete(time, machine_id)


def replay_events(events_df, cluster, scheduler, periodic_check_interval=None):
    """
    Feeds arrival and completion rows to the scheduler in time order.
    Returns one record per event for the output tables.
    """
    events_df = events_df.sort_values('time', kind='stable').reset_index(drop=True)
    event_records = []
    machine_records = []
    next_check = None
    if periodic_check_interval and len(events_df):
        next_check = events_df['time'].iloc[0] + periodic_check_interval

    for i, row in events_df.iterrows():
        task = task_from_row(row)
        event = TaskEvent(task, row['action'], row['time'])

        while next_check is not None and next_check <= event.time:
            scheduler.periodic_check(next_check)
            next_check += periodic_check_interval

        if event.action == TaskEvent.ARRIVAL:
            cluster.submit_task(event.task)
            scheduler.new_task(event.time, event.task.task_id)
        elif event.action == TaskEvent.COMPLETION:
            if cluster.complete_task(event.task.task_id):
                scheduler.task_complete(event.time, event.task.task_id)
        else:
            raise ValueError(f"Unknown event action: {event.action}")

        deliver_host_notifications(cluster, scheduler, event.time)
        state = cluster.get_current_state()

        event_records.append({
            'event_index': i,
            'time': event.time,
            'action': event.action,
            'task_id': event.task.task_id,
            'active_tasks': state['active_tasks'],
            'active_vms': state['active_vms'],
        })

        for m_state in state['machines']:
            machine_records.append({
                'event_index': i,
                'machine_id': m_state['machine_id'],
                'cpu': m_state['cpu'],
                'active_tasks': m_state['active_tasks'],
                'memory_used': m_state['memory_used'],
                'num_cores': m_state['num_cores'],
                'memory_size': m_state['memory_size'],
                'vms': m_state['vms'],
                'CPU_utilisation': m_state['active_tasks'] / m_state['num_cores'] if m_state['num_cores'] > 0 else 0,
                'memory_utilisation': m_state['memory_used'] / m_state['memory_size'] if m_state['memory_size'] > 0 else 0,
            })

    return event_records, machine_records


def run_simulation(config):
    """Run simulation with the provided configuration"""

    machines = create_machines(config)
    cluster = InMemoryCluster(machines)
    policy = create_policy(config)

    # Setup output directory and file paths
    output_directory = config.get('output_directory', 'output')

    output_path = Path(output_directory)
    output_path.mkdir(parents=True, exist_ok=True)

    output_events = output_path / config.get('output_events', 'simulation_log_events.parquet')
    output_machines = output_path / config.get('output_machines', 'simulation_log_machines.parquet')
    output_log = output_path / config.get('output_log', 'simulation.log')

    scheduler = Scheduler(
        cluster,
        policy,
        log_file=str(output_log),
        verbosity=int(config.get('verbosity', 1)),
    )
    scheduler.init()

    events_df = pd.read_parquet(config['input_events'])
    interval = _optional(config, 'periodic_check_interval', int)

    print(f"Starting simulation of cluster '{config.get('cluster_name', 'cluster')}' with {len(events_df):,} events...")
    event_records, machine_records = replay_events(events_df, cluster, scheduler, interval)

    end_time = event_records[-1]['time'] if event_records else 0
    report = sla_summary(cluster)
    scheduler.shutdown(end_time)

    pq.write_table(pa.Table.from_pandas(pd.DataFrame(event_records)), output_events)
    pq.write_table(pa.Table.from_pandas(pd.DataFrame(machine_records)), output_machines)

    print("\nSLA violation report")
    for sla_name, percentage in report.items():
        print(f"{sla_name}: {percentage:.2f}%")

    stats = scheduler.get_stats()
    print("\nSimulation complete:")
    for key, value in stats.items():
        print(f"{key}: {value:,}")

    return stats


if __name__ == "__main__":
    config = load_config("config.txt")
    run_simulation(config)
