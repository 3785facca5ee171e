from common.models import PowerState, Priority
from placement_scheduler.errors import InfeasibleHost


class Placement:
    """Outcome of a policy decision. vm_id is None when a new VM has to be created."""

    def __init__(self, machine_id, vm_id=None, score=None):
        self.machine_id = machine_id
        self.vm_id = vm_id
        self.score = score

    def __eq__(self, other):
        return (isinstance(other, Placement) and self.machine_id == other.machine_id
                and self.vm_id == other.vm_id and self.score == other.score)

    def __repr__(self):
        return f"Placement(machine={self.machine_id}, vm={self.vm_id}, score={self.score})"


class PlacementPolicy:
    """
    Base class for host selection when placing a task.
    A policy reads the fleet snapshot it is handed and keeps no state between calls.
    """
    name = None
    eager_provisioning = False
    allow_vm_creation = True

    def __init__(self, strict_cpu=True, oversubscription=1.0, allow_vm_creation=None, eager_provisioning=None):
        self.strict_cpu = strict_cpu
        self.oversubscription = oversubscription
        if allow_vm_creation is not None:
            self.allow_vm_creation = allow_vm_creation
        if eager_provisioning is not None:
            self.eager_provisioning = eager_provisioning

    def select_host(self, task, fleet, pool):
        """Returns a Placement for the task, raises InfeasibleHost when nothing fits"""
        raise NotImplementedError

    def is_feasible(self, machine, task, pool):
        if machine.s_state != PowerState.S0:
            return False
        if self.strict_cpu and machine.cpu != task.required_cpu:
            return False
        if task.gpu_capable and not machine.gpus:
            return False
        if machine.memory_used + task.memory > machine.memory_size:
            return False
        if machine.active_tasks + 1 > machine.num_cores * self.oversubscription:
            return False
        if not self.allow_vm_creation and not pool.has_matching_vm(machine.machine_id, task.required_vm, machine.cpu):
            return False
        return True

    def feasible_machines(self, task, fleet, pool):
        return [m for m in fleet if self.is_feasible(m, task, pool)]

    def placement_on(self, machine, task, pool, score=None):
        # The VM is created with the machine's CPU so that relaxed CPU matching still attaches
        vm = pool.find_reusable_vm(machine.machine_id, task.required_vm, machine.cpu)
        return Placement(machine.machine_id, vm.vm_id if vm else None, score)


class ScoredPlacementPolicy(PlacementPolicy):
    """Scores every feasible machine and picks the highest, earliest in pool order on ties."""

    def score(self, machine, task, pool):
        raise NotImplementedError

    def select_host(self, task, fleet, pool):
        best = None
        best_score = None
        for machine in self.feasible_machines(task, fleet, pool):
            score = self.score(machine, task, pool)
            if best is None or score > best_score:
                best, best_score = machine, score
        if best is None:
            raise InfeasibleHost(task.task_id)
        return self.placement_on(best, task, pool, best_score)


class BestSlackPlacement(ScoredPlacementPolicy):
    """
    Prefers the machine left with the most spare capacity after the task lands.
    slack = 1 - (cpu utilisation + memory utilisation after assignment), plus a
    small bonus when a GPU task lands on a GPU machine.
    """
    name = "best_slack"

    def __init__(self, gpu_bonus=0.05, **kwargs):
        super().__init__(**kwargs)
        self.gpu_bonus = gpu_bonus

    def score(self, machine, task, pool):
        slack = 1.0 - (machine.cpu_utilisation() + machine.memory_utilisation_after(task.memory))
        if task.gpu_capable and machine.gpus:
            slack += self.gpu_bonus
        return slack


class ConsolidationPlacement(ScoredPlacementPolicy):
    """Rewards reusing an existing VM over creating a new one, then balanced CPU/memory headroom."""
    name = "consolidation"

    def __init__(self, gpu_bonus=0.05, reuse_bonus=0.1, **kwargs):
        super().__init__(**kwargs)
        self.gpu_bonus = gpu_bonus
        self.reuse_bonus = reuse_bonus

    def score(self, machine, task, pool):
        efficiency = 1.0 - (0.5 * machine.cpu_utilisation() + 0.5 * machine.memory_utilisation_after(task.memory))
        if pool.has_matching_vm(machine.machine_id, task.required_vm, machine.cpu):
            efficiency += self.reuse_bonus
        if task.gpu_capable and machine.gpus:
            efficiency += self.gpu_bonus
        return efficiency


class LeastLoadedPlacement(PlacementPolicy):
    """Spreads load by choosing the feasible machine with the fewest active tasks."""
    name = "least_loaded"
    eager_provisioning = True
    allow_vm_creation = False

    def select_host(self, task, fleet, pool):
        candidates = self.feasible_machines(task, fleet, pool)
        if not candidates:
            raise InfeasibleHost(task.task_id)
        # min() keeps the first of equal keys, which is the lowest pool index
        best = min(candidates, key=lambda m: m.active_tasks)
        return self.placement_on(best, task, pool, best.active_tasks)


class SLAPartitionedPlacement(PlacementPolicy):
    """
    Splits the fleet in pool order: the first half serves HIGH priority tasks, the
    second half everything else. Each task first-fits its own half and falls back to
    a first-fit over the whole fleet.
    """
    name = "sla_partitioned"
    eager_provisioning = True

    def partitions(self, fleet):
        split = (len(fleet) + 1) // 2
        return fleet[:split], fleet[split:]

    def first_fit(self, task, machines, pool):
        for machine in machines:
            if self.is_feasible(machine, task, pool):
                return machine
        return None

    def select_host(self, task, fleet, pool):
        high_pool, best_effort_pool = self.partitions(fleet)
        preferred = high_pool if task.priority == Priority.HIGH else best_effort_pool
        machine = self.first_fit(task, preferred, pool)
        if machine is None:
            machine = self.first_fit(task, fleet, pool)
        if machine is None:
            raise InfeasibleHost(task.task_id)
        return self.placement_on(machine, task, pool)


POLICIES = {
    policy.name: policy
    for policy in (BestSlackPlacement, SLAPartitionedPlacement, LeastLoadedPlacement, ConsolidationPlacement)
}


def get_policy_instance(policy_name, **options):
    """Builds a policy by its config name. Options left as None keep the policy's default."""
    options = {key: value for key, value in options.items() if value is not None}
    try:
        policy_cls = POLICIES[policy_name]
    except KeyError:
        raise ValueError(f"Unknown placement policy: {policy_name}") from None
    return policy_cls(**options)
