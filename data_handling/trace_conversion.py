import pandas as pd
from pathlib import Path

from common.models import CPUType, SLAType, Task, TaskEvent, VMType, parse_bool, parse_enum


REQUIRED_COLUMNS = ['task_id', 'submit_time', 'end_time', 'cpu', 'vm_type', 'gpu', 'memory', 'sla']

ENUM_COLUMNS = {
    'cpu': CPUType,
    'vm_type': VMType,
    'sla': SLAType,
}


def _parses(parser, value):
    try:
        parser(value)
    except ValueError:
        return False
    return True


def clean_trace(df, source_name="trace"):
    """
    Drops rows the simulator cannot replay: empty cells, unknown CPU/VM/SLA names,
    non-positive memory and tasks that end before they are submitted.
    """
    initial_row_count = len(df)

    # Drop rows with pandas NaN/null values (empty cells)
    for column in REQUIRED_COLUMNS:
        mask = df[column].isna()
        dropped_count = mask.sum()
        if dropped_count > 0:
            print(f"  Dropped {dropped_count} row(s) from {source_name} due to NaN/null value in column '{column}'")
            df = df[~mask]

    for column, enum_cls in ENUM_COLUMNS.items():
        mask = ~df[column].map(lambda value: _parses(lambda v: parse_enum(enum_cls, v), value))
        dropped_count = mask.sum()
        if dropped_count > 0:
            print(f"  Dropped {dropped_count} row(s) from {source_name} due to unknown {enum_cls.__name__} in column '{column}'")
            df = df[~mask]

    mask = ~df["gpu"].map(lambda value: _parses(parse_bool, value))
    if mask.sum() > 0:
        print(f"  Dropped {mask.sum()} row(s) from {source_name} due to an unreadable gpu flag")
        df = df[~mask]

    mask = pd.to_numeric(df['memory'], errors='coerce').fillna(0) <= 0
    if mask.sum() > 0:
        print(f"  Dropped {mask.sum()} row(s) from {source_name} due to non-positive memory")
        df = df[~mask]

    mask = df['end_time'] < df['submit_time']
    if mask.sum() > 0:
        print(f"  Dropped {mask.sum()} row(s) from {source_name} that end before they are submitted")
        df = df[~mask]

    total_dropped = initial_row_count - len(df)
    if total_dropped > 0:
        print(f"  Total rows dropped from {source_name}: {total_dropped} (from {initial_row_count} to {len(df)})")

    return df


def read_task_traces(input_directory):
    """Read all .csv task traces from input directory into a single dataframe"""
    input_path = Path(input_directory)

    if not input_path.exists():
        raise FileNotFoundError(f"Input directory not found: {input_directory}")

    csv_files = sorted(input_path.glob("*.csv"))

    if not csv_files:
        raise FileNotFoundError(f"No .csv files found in {input_directory}")

    print(f"Found {len(csv_files)} .csv files in {input_directory}")

    dfs = []
    for csv_file in csv_files:
        print(f"Reading {csv_file.name}...")
        df = pd.read_csv(csv_file, usecols=REQUIRED_COLUMNS, skipinitialspace=True, on_bad_lines='skip')
        dfs.append(clean_trace(df, csv_file.name))

    combined_df = pd.concat(dfs, ignore_index=True)
    combined_df['task_id'] = combined_df['task_id'].astype(int)
    return combined_df


def load_task_events(df):
    """
    Given a dataframe of task trace rows, convert each task into an arrival and a completion event.
    """
    events = []
    instant = set()  # tasks that finish at the instant they are submitted

    for _, row in df.iterrows():
        task = Task(
            task_id=int(row['task_id']),
            required_cpu=parse_enum(CPUType, row['cpu']),
            required_vm=parse_enum(VMType, row['vm_type']),
            gpu_capable=parse_bool(row['gpu']),
            memory=int(row['memory']),
            sla=parse_enum(SLAType, row['sla']),
        )
        events.append(TaskEvent(task=task, action=TaskEvent.ARRIVAL, time=int(row['submit_time'])))
        events.append(TaskEvent(task=task, action=TaskEvent.COMPLETION, time=int(row['end_time'])))
        if int(row['end_time']) == int(row['submit_time']):
            instant.add(task.task_id)

    # Completions sort before arrivals at the same instant so freed capacity is visible,
    # except a task's own completion, which must follow its arrival
    def order(ev):
        if ev.action == TaskEvent.ARRIVAL:
            return ev.time, 1
        return ev.time, 2 if ev.task.task_id in instant else 0

    events.sort(key=order)
    return events


def events_to_dataframe(events):
    events_df = pd.DataFrame([
        {
            'task_id': event.task.task_id,
            'required_cpu': event.task.required_cpu.name,
            'required_vm': event.task.required_vm.name,
            'gpu_capable': event.task.gpu_capable,
            'memory': event.task.memory,
            'sla': event.task.sla.name,
            'action': event.action,
            'time': event.time,
        }
        for event in events],
        columns=['task_id', 'required_cpu', 'required_vm', 'gpu_capable', 'memory', 'sla', 'action', 'time'])

    # Remove duplicate events (same task_id and action)
    return events_df.drop_duplicates(subset=['task_id', 'action'], keep='first').reset_index(drop=True)


def convert_traces(input_directory, output_file):
    df = read_task_traces(input_directory)
    events_df = events_to_dataframe(load_task_events(df))

    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)
    events_df.to_parquet(output_file, index=False, engine='pyarrow')
    print(f"\nEvents dataframe saved to: {output_file} ({len(events_df):,} events)")
    return events_df


if __name__ == "__main__":
    from placement_scheduler.run_simulation import load_config

    config = load_config("config.txt")
    convert_traces(config.get('input_directory'), config.get('input_events'))
