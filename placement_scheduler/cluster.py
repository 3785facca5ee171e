from common.models import MachineInfo, VMInfo, PowerState, SLAType
from placement_scheduler.errors import HostError


class SimulationHost:
    """
    Interface the scheduler uses to read cluster state and request changes.
    Every call is synchronous. Mutators raise HostError when the request is rejected.
    """
    def machine_count(self):
        raise NotImplementedError

    def machine_info(self, machine_id):
        """Returns a fresh MachineInfo snapshot"""
        raise NotImplementedError

    def vm_info(self, vm_id):
        """Returns a fresh VMInfo snapshot"""
        raise NotImplementedError

    def task_info(self, task_id):
        """Returns the Task holding the task's requirements"""
        raise NotImplementedError

    def set_machine_state(self, machine_id, state):
        raise NotImplementedError

    def create_vm(self, vm_type, cpu):
        """Returns the id of the new VM"""
        raise NotImplementedError

    def attach_vm(self, vm_id, machine_id):
        raise NotImplementedError

    def add_task_to_vm(self, vm_id, task_id, priority):
        raise NotImplementedError

    def set_task_priority(self, task_id, priority):
        raise NotImplementedError

    def migrate_vm(self, vm_id, machine_id):
        raise NotImplementedError

    def shutdown_vm(self, vm_id):
        raise NotImplementedError


class Machine:
    def __init__(self, machine_id, cpu, num_cores, memory_size, gpus=False, s_state=PowerState.S0):
        self.machine_id = machine_id
        self.cpu = cpu
        self.num_cores = num_cores
        self.memory_size = memory_size
        self.gpus = gpus
        self.s_state = s_state
        self.memory_used = 0
        self.active_tasks = 0
        self.vm_ids = []

    def run_task(self, memory_required):
        self.active_tasks += 1
        self.memory_used += memory_required

    def release_task(self, memory_required):
        self.active_tasks -= 1
        self.memory_used -= memory_required

    def snapshot(self):
        return MachineInfo(
            machine_id=self.machine_id,
            cpu=self.cpu,
            num_cores=self.num_cores,
            memory_size=self.memory_size,
            memory_used=self.memory_used,
            gpus=self.gpus,
            s_state=self.s_state,
            active_tasks=self.active_tasks,
            active_vms=len(self.vm_ids),
        )


class VirtualMachine:
    def __init__(self, vm_id, vm_type, cpu):
        self.vm_id = vm_id
        self.vm_type = vm_type
        self.cpu = cpu
        self.machine_id = None
        self.tasks = {}  # task_id -> priority
        self.migration_target = None
        self.shut_down = False


class InMemoryCluster(SimulationHost):
    """
    A simulation host that keeps the whole cluster in memory.
    Machines are indexed by their position in the list they were created from.
    Tasks must be submitted before the scheduler is told they arrived.
    """
    def __init__(self, machines):
        self.machines = list(machines)
        self.vms = {}
        self.tasks = {}
        self.task_priorities = {}
        self.task_placement = {}  # task_id -> vm_id
        self.completed_tasks = set()
        self.memory_warnings = []
        self.state_changes = []
        self._next_vm_id = 0

    def _machine(self, machine_id):
        if not 0 <= machine_id < len(self.machines):
            raise HostError(f"Unknown machine {machine_id}")
        return self.machines[machine_id]

    def _vm(self, vm_id):
        vm = self.vms.get(vm_id)
        if vm is None or vm.shut_down:
            raise HostError(f"Unknown or shut down VM {vm_id}")
        return vm

    def submit_task(self, task):
        self.tasks[task.task_id] = task
        self.task_priorities[task.task_id] = task.priority

    # Snapshot queries

    def machine_count(self):
        return len(self.machines)

    def machine_info(self, machine_id):
        return self._machine(machine_id).snapshot()

    def vm_info(self, vm_id):
        vm = self._vm(vm_id)
        return VMInfo(vm.vm_id, vm.vm_type, vm.cpu, vm.machine_id, vm.tasks.keys())

    def task_info(self, task_id):
        try:
            return self.tasks[task_id]
        except KeyError:
            raise HostError(f"Unknown task {task_id}") from None

    # Mutators

    def set_machine_state(self, machine_id, state):
        machine = self._machine(machine_id)
        if state != PowerState.S0 and machine.active_tasks:
            raise HostError(f"Machine {machine_id} still runs {machine.active_tasks} task(s)")
        machine.s_state = state
        self.state_changes.append(machine_id)

    def create_vm(self, vm_type, cpu):
        vm_id = self._next_vm_id
        self._next_vm_id += 1
        self.vms[vm_id] = VirtualMachine(vm_id, vm_type, cpu)
        return vm_id

    def attach_vm(self, vm_id, machine_id):
        vm = self._vm(vm_id)
        machine = self._machine(machine_id)
        if vm.machine_id is not None:
            raise HostError(f"VM {vm_id} is already attached to machine {vm.machine_id}")
        if machine.s_state != PowerState.S0:
            raise HostError(f"Machine {machine_id} is not running ({machine.s_state.name})")
        if machine.cpu != vm.cpu:
            raise HostError(f"VM {vm_id} ({vm.cpu.name}) cannot run on machine {machine_id} ({machine.cpu.name})")
        vm.machine_id = machine_id
        machine.vm_ids.append(vm_id)

    def add_task_to_vm(self, vm_id, task_id, priority):
        vm = self._vm(vm_id)
        task = self.task_info(task_id)
        if vm.machine_id is None:
            raise HostError(f"VM {vm_id} is not attached to a machine")
        if vm.migration_target is not None:
            raise HostError(f"VM {vm_id} is migrating")
        if task_id in self.task_placement:
            raise HostError(f"Task {task_id} is already running on VM {self.task_placement[task_id]}")
        machine = self.machines[vm.machine_id]
        machine.run_task(task.memory)
        vm.tasks[task_id] = priority
        self.task_placement[task_id] = vm_id
        self.task_priorities[task_id] = priority
        if machine.memory_used > machine.memory_size:
            self.memory_warnings.append(machine.machine_id)

    def set_task_priority(self, task_id, priority):
        self.task_info(task_id)
        self.task_priorities[task_id] = priority
        vm_id = self.task_placement.get(task_id)
        if vm_id is not None:
            self.vms[vm_id].tasks[task_id] = priority

    def migrate_vm(self, vm_id, machine_id):
        vm = self._vm(vm_id)
        target = self._machine(machine_id)
        if target.s_state != PowerState.S0 or target.cpu != vm.cpu:
            raise HostError(f"VM {vm_id} cannot migrate to machine {machine_id}")
        vm.migration_target = machine_id

    def finish_migration(self, vm_id):
        """Moves a migrating VM and its tasks to the target machine."""
        vm = self._vm(vm_id)
        if vm.migration_target is None:
            raise HostError(f"VM {vm_id} is not migrating")
        source = self.machines[vm.machine_id]
        target = self.machines[vm.migration_target]
        for task_id in vm.tasks:
            memory = self.tasks[task_id].memory
            source.release_task(memory)
            target.run_task(memory)
        source.vm_ids.remove(vm_id)
        target.vm_ids.append(vm_id)
        vm.machine_id = vm.migration_target
        vm.migration_target = None

    def shutdown_vm(self, vm_id):
        vm = self._vm(vm_id)
        if vm.machine_id is not None:
            machine = self.machines[vm.machine_id]
            for task_id in list(vm.tasks):
                machine.release_task(self.tasks[task_id].memory)
                self.task_placement.pop(task_id, None)
            machine.vm_ids.remove(vm_id)
        vm.tasks.clear()
        vm.shut_down = True

    # Host side lifecycle

    def complete_task(self, task_id):
        """Releases a finished task. Returns False if the task was never placed."""
        vm_id = self.task_placement.pop(task_id, None)
        if vm_id is None:
            return False
        vm = self.vms[vm_id]
        vm.tasks.pop(task_id, None)
        self.machines[vm.machine_id].release_task(self.tasks[task_id].memory)
        self.completed_tasks.add(task_id)
        return True

    def pop_memory_warnings(self):
        warnings, self.memory_warnings = self.memory_warnings, []
        return warnings

    def pop_state_changes(self):
        changes, self.state_changes = self.state_changes, []
        return changes

    def sla_report(self, sla):
        """Percentage of submitted tasks of this class that never ran."""
        submitted = [t for t in self.tasks.values() if t.sla == sla]
        if not submitted:
            return 0.0
        ran = self.completed_tasks | set(self.task_placement)
        missed = sum(1 for t in submitted if t.task_id not in ran)
        return 100.0 * missed / len(submitted)

    def get_current_state(self):
        """Return current cluster state for external logging"""
        return {
            'active_tasks': len(self.task_placement),
            'active_vms': sum(1 for vm in self.vms.values() if not vm.shut_down),
            'machines': [{
                'machine_id': m.machine_id,
                'cpu': m.cpu.name,
                's_state': m.s_state.name,
                'active_tasks': m.active_tasks,
                'memory_used': m.memory_used,
                'num_cores': m.num_cores,
                'memory_size': m.memory_size,
                'gpus': m.gpus,
                'vms': len(m.vm_ids),
                }
            for m in self.machines]
        }


def sla_summary(cluster):
    """Returns {sla name: unallocated percentage} for every class except SLA3."""
    return {sla.name: cluster.sla_report(sla) for sla in SLAType if sla != SLAType.SLA3}
