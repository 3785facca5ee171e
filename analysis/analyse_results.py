import pandas as pd
import matplotlib.pyplot as plt
import numpy as np
import plotly.express as px
from pathlib import Path

from placement_scheduler.run_simulation import load_config


def load_results(events_file, machines_file):
    """Merge per machine rows with the time and task counts of the event that produced them"""
    events_df = pd.read_parquet(events_file)
    machines_df = pd.read_parquet(machines_file)
    return machines_df.merge(
        events_df[['event_index', 'time', 'active_tasks', 'active_vms']].drop_duplicates('event_index'),
        on='event_index',
        how='left'
    )


def cluster_over_time(df):
    return (
        df
        .groupby(["event_index", "time"], as_index=False)
        .agg({
            "active_tasks_x": "sum",
            "memory_used": "sum",
            "num_cores": "sum",
            "memory_size": "sum",
            "vms": "sum",
            "CPU_utilisation": "mean",
            "memory_utilisation": "mean",
            "active_tasks_y": "first",
        })
        .rename(columns={"active_tasks_x": "tasks_on_machines", "active_tasks_y": "active_tasks"})
        .sort_values("time")
    )


def summarise_utilisation(df):
    """
    Average and 95th percentile CPU/memory utilisation across machines and events,
    plus the peak number of active tasks and VMs.
    """
    if df.empty:
        return {
            'avg_cpu_utilisation': 0.0,
            'avg_memory_utilisation': 0.0,
            'p95_cpu_utilisation': 0.0,
            'p95_memory_utilisation': 0.0,
            'peak_active_tasks': 0,
            'peak_active_vms': 0,
        }
    return {
        'avg_cpu_utilisation': float(df["CPU_utilisation"].mean()),
        'avg_memory_utilisation': float(df["memory_utilisation"].mean()),
        'p95_cpu_utilisation': float(np.percentile(df["CPU_utilisation"], 95)),
        'p95_memory_utilisation': float(np.percentile(df["memory_utilisation"], 95)),
        'peak_active_tasks': int(df["active_tasks_y"].max()),
        'peak_active_vms': int(df["active_vms"].max()),
    }


def plot_cluster(cluster, output_file=None):
    fig, axes = plt.subplots(2, 1, figsize=(14, 10))

    # Plot 1: utilisation percentages
    axes[0].plot(cluster["time"], cluster["CPU_utilisation"] * 100, label="CPU (tasks / cores)", linewidth=1.0)
    axes[0].plot(cluster["time"], cluster["memory_utilisation"] * 100, label="Memory", linewidth=1.0)
    axes[0].set_xlabel("Time")
    axes[0].set_ylabel("Utilisation (%)")
    axes[0].set_ylim(0, 105)
    axes[0].set_title("Cluster utilisation over time")
    axes[0].grid(True, alpha=0.3)
    axes[0].legend()

    # Plot 2: active tasks and VMs
    ax2 = axes[1]
    ax2.plot(cluster["time"], cluster["active_tasks"], label="Active tasks", linewidth=1.5)
    ax2.fill_between(cluster["time"], cluster["active_tasks"], alpha=0.3)
    ax2.set_xlabel("Time")
    ax2.set_ylabel("Active tasks")
    ax2.set_title("Active tasks and VMs over time")
    ax2.grid(True, alpha=0.3)

    ax2_sec = ax2.twinx()
    ax2_sec.plot(cluster["time"], cluster["vms"], "--", label="VMs", linewidth=1.0, color="tab:orange")
    ax2_sec.set_ylabel("VMs")

    lines1, labels1 = ax2.get_legend_handles_labels()
    lines2, labels2 = ax2_sec.get_legend_handles_labels()
    ax2.legend(lines1 + lines2, labels1 + labels2, loc="upper left")

    plt.tight_layout()
    if output_file:
        fig.savefig(output_file)
    else:
        plt.show()
    return fig


def plot_machine_heatmap(df, output_file=None):
    """Per machine memory utilisation heatmap (scrollable)"""
    memory_pivot = (
        df
        .pivot_table(index="time", columns="machine_id", values="memory_utilisation", aggfunc="last")
        .sort_index()
    )

    fig = px.imshow(
        memory_pivot.T.values * 100.0,
        x=memory_pivot.index,
        y=memory_pivot.columns,
        labels=dict(x="Time", y="Machine", color="Memory utilisation (%)"),
        aspect="auto",
        origin="lower",
        zmin=0,
        zmax=100,
        color_continuous_scale="Viridis",
    )

    # Big height so you scroll to see all machines
    fig.update_layout(
        title="Per machine memory utilisation over time",
        height=max(400, 20 * len(memory_pivot.columns)),
    )

    if output_file:
        fig.write_html(output_file)
    else:
        fig.show()
    return fig


if __name__ == "__main__":
    config = load_config("config.txt", search_dirs=[Path(__file__).parent, Path(__file__).parent.parent])
    output_path = Path(config.get('output_directory', 'output'))
    df = load_results(
        output_path / config.get('output_events', 'simulation_log_events.parquet'),
        output_path / config.get('output_machines', 'simulation_log_machines.parquet'),
    )
    print(f"Merged data shape: {df.shape}")

    summary = summarise_utilisation(df)
    print("\n" + "="*60)
    print("UTILISATION SUMMARY")
    print("="*60)
    for key, value in summary.items():
        if isinstance(value, float):
            print(f"{key:<26} {value * 100:.2f}%")
        else:
            print(f"{key:<26} {value:,}")
    print("="*60 + "\n")

    plot_cluster(cluster_over_time(df))
    plot_machine_heatmap(df)
