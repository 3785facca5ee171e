from placement_scheduler.errors import HostError, ProvisioningError, StaleEventError


class VMRecord:
    """The scheduler's own bookkeeping for a VM it created. Type and CPU are fixed at creation."""

    def __init__(self, vm_id, vm_type, cpu, machine_id):
        self.vm_id = vm_id
        self.vm_type = vm_type
        self.cpu = cpu
        self.machine_id = machine_id
        self.tasks = set()
        self.migrating = False

    def matches(self, vm_type, cpu):
        return self.vm_type == vm_type and self.cpu == cpu

    def __repr__(self):
        return f"VMRecord({self.vm_id}, {self.vm_type.name}/{self.cpu.name} on {self.machine_id})"


class VMPoolManager:
    """
    Tracks the VMs the scheduler has created, in creation order.
    Capacity accounting is never derived from the task sets kept here; the host's
    machine snapshots are the only source of truth for that.
    """
    def __init__(self, host):
        self.host = host
        self.records = {}  # vm_id -> VMRecord, insertion order is creation order
        self.task_vm = {}  # task_id -> vm_id

    def __len__(self):
        return len(self.records)

    def __iter__(self):
        return iter(list(self.records.values()))

    def get(self, vm_id):
        record = self.records.get(vm_id)
        if record is None:
            raise StaleEventError(f"VM {vm_id} is not in the pool")
        return record

    def vms_on_machine(self, machine_id):
        return [r for r in self.records.values() if r.machine_id == machine_id]

    def has_matching_vm(self, machine_id, vm_type, cpu):
        return self.find_reusable_vm(machine_id, vm_type, cpu) is not None

    def find_reusable_vm(self, machine_id, vm_type, cpu):
        """First non-migrating VM on the machine with exactly this type and CPU, or None."""
        for record in self.records.values():
            if record.machine_id == machine_id and record.matches(vm_type, cpu) and not record.migrating:
                return record
        return None

    def provision_vm(self, machine_id, vm_type, cpu):
        try:
            vm_id = self.host.create_vm(vm_type, cpu)
        except HostError as e:
            raise ProvisioningError(f"Create {vm_type.name}/{cpu.name} VM failed: {e}") from e

        try:
            self.host.attach_vm(vm_id, machine_id)
        except HostError as e:
            message = f"Attach VM {vm_id} to machine {machine_id} failed: {e}"
            # Do not leave an unattached VM behind on the host
            try:
                self.host.shutdown_vm(vm_id)
            except HostError as cleanup_error:
                message += f" (and shutting it down failed: {cleanup_error})"
            raise ProvisioningError(message) from e

        record = VMRecord(vm_id, vm_type, cpu, machine_id)
        self.records[vm_id] = record
        return record

    def assign_task(self, vm_id, task_id, priority):
        """Hands the task to the host and records it against the VM."""
        record = self.get(vm_id)
        self.host.add_task_to_vm(vm_id, task_id, priority)
        record.tasks.add(task_id)
        self.task_vm[task_id] = vm_id

    def release_task(self, task_id):
        vm_id = self.task_vm.pop(task_id, None)
        if vm_id is None:
            raise StaleEventError(f"Task {task_id} was never placed by this pool")
        record = self.records.get(vm_id)
        if record is not None:
            record.tasks.discard(task_id)
        return vm_id

    def begin_migration(self, vm_id, machine_id):
        record = self.get(vm_id)
        self.host.migrate_vm(vm_id, machine_id)
        record.migrating = True

    def complete_migration(self, vm_id):
        """Clears the migrating flag. Safe to call more than once for the same VM."""
        record = self.get(vm_id)
        if not record.migrating:
            return False
        record.machine_id = self.host.vm_info(vm_id).machine_id
        record.migrating = False
        return True

    def shutdown_all(self):
        """Shuts every pooled VM down once and empties the pool. Returns how many were shut down."""
        records, self.records = list(self.records.values()), {}
        self.task_vm = {}
        failed = []
        for record in records:
            try:
                self.host.shutdown_vm(record.vm_id)
            except HostError as e:
                failed.append(f"{record.vm_id} ({e})")
        if failed:
            raise HostError(f"Shutdown failed for VM(s): {', '.join(failed)}")
        return len(records)
