import pytest

from common.models import CPUType, PowerState, SLAType, Task, VMType
from placement_scheduler.cluster import InMemoryCluster, Machine
from placement_scheduler.policies import get_policy_instance
from placement_scheduler.scheduler import Scheduler


def make_machine(machine_id, cpu=CPUType.X86, cores=8, memory=32768, gpus=False, state=PowerState.S0):
    return Machine(machine_id, cpu, cores, memory, gpus, state)


def make_cluster(*machines):
    """Each argument is a dict of make_machine keyword arguments, ids follow the order given."""
    return InMemoryCluster([make_machine(i, **kwargs) for i, kwargs in enumerate(machines)])


def make_task(task_id, cpu=CPUType.X86, vm=VMType.LINUX, gpu=False, memory=8, sla=SLAType.SLA3):
    return Task(task_id, cpu, vm, gpu, memory, sla)


def make_scheduler(cluster, policy_name="best_slack", **options):
    scheduler = Scheduler(cluster, get_policy_instance(policy_name, **options), verbosity=-1)
    scheduler.init()
    return scheduler


def arrive(cluster, scheduler, task, time=0):
    cluster.submit_task(task)
    scheduler.new_task(time, task.task_id)


@pytest.fixture
def single_x86_cluster():
    return make_cluster(dict(cpu=CPUType.X86, cores=8, memory=32768))
