"""
Shared data models for the VM Placement Scheduler.

This module contains the enums, snapshot records and lookup helpers used across the
scheduler core, the in-memory cluster and the data handling components.
"""
from enum import Enum


class CPUType(Enum):
    ARM = "ARM"
    POWER = "POWER"
    RISCV = "RISCV"
    X86 = "X86"


class VMType(Enum):
    LINUX = "LINUX"
    LINUX_RT = "LINUX_RT"
    WIN = "WIN"
    AIX = "AIX"


class SLAType(Enum):
    """Service level classes, SLA0 being the strictest."""
    SLA0 = "SLA0"
    SLA1 = "SLA1"
    SLA2 = "SLA2"
    SLA3 = "SLA3"


class Priority(Enum):
    HIGH = "HIGH"
    MID = "MID"
    LOW = "LOW"


class PowerState(Enum):
    """Machine power states. S0 is the only state that can run tasks, S5 is off."""
    S0 = "S0"
    S0i1 = "S0i1"
    S1 = "S1"
    S2 = "S2"
    S3 = "S3"
    S4 = "S4"
    S5 = "S5"


_SLA_PRIORITY = {
    SLAType.SLA0: Priority.HIGH,
    SLAType.SLA1: Priority.MID,
}

_CPU_DEFAULT_VM = {
    CPUType.POWER: VMType.AIX,
}


def priority_from_sla(sla):
    """SLA0 -> HIGH, SLA1 -> MID, every other class -> LOW."""
    return _SLA_PRIORITY.get(sla, Priority.LOW)


def default_vm_type_for_cpu(cpu):
    """POWER machines run AIX, everything else runs LINUX."""
    return _CPU_DEFAULT_VM.get(cpu, VMType.LINUX)


def parse_bool(value):
    """Accepts true/false, yes/no, on/off and 1/0 in any case."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "yes", "1", "on"):
        return True
    if text in ("false", "no", "0", "off"):
        return False
    raise ValueError(f"Not a boolean value: {value!r}")


def parse_enum(enum_cls, value):
    """
    Convert a config or trace value into an enum member.
    Accepts members, exact names and case-insensitive names, raises ValueError otherwise.
    """
    if isinstance(value, enum_cls):
        return value
    name = str(value).strip()
    try:
        return enum_cls[name]
    except KeyError:
        pass
    for member in enum_cls:
        if member.name.lower() == name.lower():
            return member
    raise ValueError(f"Unknown {enum_cls.__name__}: {value!r}")


class Task:
    """Represents a task's resource requirements as read once at arrival."""

    def __init__(self, task_id, required_cpu, required_vm, gpu_capable, memory, sla):
        self.task_id = task_id
        self.required_cpu = required_cpu
        self.required_vm = required_vm
        self.gpu_capable = gpu_capable
        self.memory = memory
        self.sla = sla
        self.priority = priority_from_sla(sla)

    def __repr__(self):
        return (f"Task({self.task_id}, {self.required_cpu.name}, {self.required_vm.name}, "
                f"gpu={self.gpu_capable}, mem={self.memory}, {self.sla.name})")


class TaskEvent:
    """Represents an event in a task's lifecycle (arrival or completion)."""

    ARRIVAL = "arrival"
    COMPLETION = "completion"

    def __init__(self, task, action, time):
        self.task = task
        self.time = time
        self.action = action


class MachineInfo:
    """Read-only snapshot of a physical machine at the moment it was requested."""

    def __init__(self, machine_id, cpu, num_cores, memory_size, memory_used, gpus, s_state,
                 active_tasks=0, active_vms=0):
        self.machine_id = machine_id
        self.cpu = cpu
        self.num_cores = num_cores
        self.memory_size = memory_size
        self.memory_used = memory_used
        self.gpus = gpus
        self.s_state = s_state
        self.active_tasks = active_tasks
        self.active_vms = active_vms

    def cpu_utilisation(self):
        return self.active_tasks / self.num_cores if self.num_cores else 0.0

    def memory_utilisation_after(self, memory):
        """Memory utilisation if `memory` more MB were committed to this machine."""
        if not self.memory_size:
            return 1.0
        return (self.memory_used + memory) / self.memory_size


class VMInfo:
    """Read-only snapshot of a virtual machine."""

    def __init__(self, vm_id, vm_type, cpu, machine_id, active_tasks=()):
        self.vm_id = vm_id
        self.vm_type = vm_type
        self.cpu = cpu
        self.machine_id = machine_id
        self.active_tasks = list(active_tasks)
