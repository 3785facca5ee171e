from common.models import PowerState, Priority, default_vm_type_for_cpu
from placement_scheduler.errors import HostError, InfeasibleHost, ProvisioningError, StaleEventError
from placement_scheduler.vm_pool import VMPoolManager


class Scheduler:
    """
    Places tasks onto VMs in response to host events.
    Every public handler takes the simulated time and an id, returns None and never
    lets an exception escape to the host: failures are counted and logged instead.
    """
    def __init__(self, host, policy, log_file=None, verbosity=1):
        self.host = host
        self.policy = policy
        self.pool = VMPoolManager(host)
        self.machines = []
        self.escalated_tasks = set()
        self.unallocated_tasks = []
        self.initialised = False
        self.stats = {
            'placed': 0,
            'failed_placement': 0,
            'vms_created': 0,
            'vms_reused': 0,
            'completed': 0,
            'stale_events': 0,
            'memory_warnings': 0,
            'sla_warnings': 0,
            'vms_shut_down': 0,
            'internal_errors': 0,
        }
        self.log_file = log_file
        self.verbosity = verbosity

    def _log(self, message, level=1):
        """Write message to log file and print to console if within the verbosity level"""
        if level > self.verbosity:
            return
        message = f"[{level}] {message}"
        print(message)
        if self.log_file:
            with open(self.log_file, 'a') as f:
                f.write(message + "\n")

    def _internal_error(self, where, error):
        self.stats['internal_errors'] += 1
        self._log(f"[ERROR] {where}: {type(error).__name__}: {error}", 0)

    def init(self):
        if self.initialised:
            self._log("[STALE] Scheduler.init() called again, ignoring", 2)
            return
        self.initialised = True

        total = self.host.machine_count()
        self._log(f"Scheduler.init(): {total} machine(s), policy '{self.policy.name}'", 3)
        if not self.policy.strict_cpu:
            self._log("[WARNING] CPU architecture matching is relaxed, tasks may land on any architecture", 0)

        for machine_id in range(total):
            try:
                info = self.host.machine_info(machine_id)
                if info.s_state != PowerState.S0:
                    self.host.set_machine_state(machine_id, PowerState.S0)
            except HostError as e:
                self._log(f"[FAIL POWER ON] Machine {machine_id}: {e} - leaving it out of the pool", 0)
                continue
            self.machines.append(machine_id)

            if self.policy.eager_provisioning:
                vm_type = default_vm_type_for_cpu(info.cpu)
                try:
                    record = self.pool.provision_vm(machine_id, vm_type, info.cpu)
                except ProvisioningError as e:
                    self._log(f"[FAIL PROVISION] Machine {machine_id}: {e}", 0)
                    continue
                self.stats['vms_created'] += 1
                self._log(f"Scheduler.init(): VM {record.vm_id} ({vm_type.name}) on machine {machine_id}", 3)

    def fleet_snapshot(self):
        return [self.host.machine_info(machine_id) for machine_id in self.machines]

    def new_task(self, time, task_id):
        try:
            self._place(task_id)
        except (InfeasibleHost, ProvisioningError) as e:
            self.stats['failed_placement'] += 1
            self.escalated_tasks.discard(task_id)
            self.unallocated_tasks.append(task_id)
            self._log(f"[FAIL PLACE] Task {task_id} at {time}: {e} - leaving unallocated", 0)
        except Exception as e:
            self.unallocated_tasks.append(task_id)
            self.escalated_tasks.discard(task_id)
            self._internal_error(f"new_task({task_id})", e)

    def _place(self, task_id):
        task = self.host.task_info(task_id)
        priority = Priority.HIGH if task_id in self.escalated_tasks else task.priority
        placement = self.policy.select_host(task, self.fleet_snapshot(), self.pool)

        if placement.vm_id is None:
            machine = self.host.machine_info(placement.machine_id)
            record = self.pool.provision_vm(placement.machine_id, task.required_vm, machine.cpu)
            self.stats['vms_created'] += 1
        else:
            record = self.pool.get(placement.vm_id)
            self.stats['vms_reused'] += 1

        try:
            self.pool.assign_task(record.vm_id, task_id, priority)
        except HostError as e:
            raise ProvisioningError(f"Host refused task on VM {record.vm_id}: {e}") from e
        self.stats['placed'] += 1
        self._log(f"[SUCCESS PLACE] Task {task_id} on VM {record.vm_id} machine {record.machine_id}", 4)

    def task_complete(self, time, task_id):
        try:
            vm_id = self.pool.release_task(task_id)
        except StaleEventError as e:
            self.stats['stale_events'] += 1
            self._log(f"[STALE] task_complete at {time}: {e}", 2)
            return
        self.escalated_tasks.discard(task_id)
        self.stats['completed'] += 1
        self._log(f"[SUCCESS RELEASE] Task {task_id} left VM {vm_id} at {time}", 4)

    def migration_complete(self, time, vm_id):
        try:
            cleared = self.pool.complete_migration(vm_id)
        except StaleEventError as e:
            self.stats['stale_events'] += 1
            self._log(f"[STALE] migration_complete at {time}: {e}", 2)
            return
        except Exception as e:
            self._internal_error(f"migration_complete({vm_id})", e)
            return
        if cleared:
            self._log(f"Migration of VM {vm_id} completed at {time}", 4)
        else:
            self._log(f"[STALE] Duplicate migration completion for VM {vm_id} at {time}", 2)

    def periodic_check(self, time):
        """Nothing to adjust periodically for the placement-only policies."""
        self._log(f"periodic_check() at {time}", 4)

    def memory_warning(self, time, machine_id):
        self.stats['memory_warnings'] += 1
        self._log(f"[MEMORY WARNING] Overflow on machine {machine_id} at {time}", 0)

    def sla_warning(self, time, task_id):
        """Boosts a late task to HIGH priority. The task stays where it runs."""
        self.stats['sla_warnings'] += 1
        try:
            self.host.set_task_priority(task_id, Priority.HIGH)
        except HostError as e:
            self.stats['stale_events'] += 1
            self._log(f"[STALE] sla_warning at {time}: {e}", 2)
            return
        except Exception as e:
            self._internal_error(f"sla_warning({task_id})", e)
            return
        self.escalated_tasks.add(task_id)
        self._log(f"[SLA WARNING] Task {task_id} escalated to HIGH at {time}", 2)

    def state_change_complete(self, time, machine_id):
        self._log(f"Machine {machine_id} finished changing state at {time}", 4)

    def shutdown(self, time):
        try:
            count = self.pool.shutdown_all()
        except Exception as e:
            self._internal_error("shutdown", e)
            return
        self.stats['vms_shut_down'] += count
        self._log(f"Shutdown at {time}: {count} VM(s) shut down", 1)

    def get_stats(self):
        """Return scheduler statistics"""
        return self.stats.copy()
