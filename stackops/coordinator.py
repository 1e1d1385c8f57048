"""Workflow coordination: backup, restore, reconcile, upgrade and teardown."""

from __future__ import annotations

import shlex
import shutil
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

import httpx
import structlog

from .config import CONTAINER_RUNTIMES, ManagedService, StackConfig
from .errors import PreconditionError, SnapshotIOError, StackOpsError, TransitionError
from .health import HealthChecker
from .models import DesiredState, ObservedStatus
from .preconditions import check_host, require_paths, require_root
from .reconcile.planner import is_converged
from .reconcile.reconciler import ReconcileOutcome, Reconciler
from .reporting import OperationReport
from .runtime.base import RuntimeAdapter
from .runtime.probe import RuntimeProbe, build_adapters
from .scheduler.job_scheduler import BackupScheduler
from .scheduler.trigger import CrontabInstaller, build_backup_command, render_cron_line
from .snapshot.archive import remove_path
from .snapshot.manager import SnapshotManager
from .snapshot.restore import restore_snapshot
from .snapshot.retention import StoredSnapshot, find_snapshot, list_snapshots, prune
from .snapshot.verify import verify_snapshot

logger = structlog.get_logger(__name__)


class StackCoordinator:
    """Runs each workflow against one StackConfig and reports every item.

    Workflows return an OperationReport; only precondition failures stop a
    workflow early, everything else is recorded per item.
    """

    def __init__(
        self,
        config: StackConfig,
        adapters: Optional[Dict[str, RuntimeAdapter]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Callable[[], datetime]] = None,
        crontab: Optional[CrontabInstaller] = None,
        http_client: Optional[httpx.Client] = None,
        check_preconditions: bool = True,
    ):
        self.config = config
        self.adapters = adapters if adapters is not None else build_adapters(config)
        self.probe = RuntimeProbe(config, self.adapters)
        self.reconciler = Reconciler(self.probe, config.reconcile, sleep=sleep)
        self.clock = clock or datetime.now
        self.snapshots = SnapshotManager(config.backup.prefix, clock=self.clock)
        self.crontab = crontab or CrontabInstaller()
        self.http_client = http_client
        self.check_preconditions = check_preconditions

    # -- helpers ---------------------------------------------------------

    def _preflight(self, services: Optional[List[ManagedService]] = None, runtime: bool = True) -> None:
        if not self.check_preconditions:
            return
        if runtime:
            check_host(self.config, services)
        elif self.config.require_root:
            require_root()

    def _complete(self, report: OperationReport) -> OperationReport:
        report.finish()
        try:
            report.save(Path(self.config.reports_directory))
        except OSError as e:
            logger.warning("Could not save operation report", operation=report.operation, error=str(e))
        logger.info("Operation finished",
                    operation=report.operation,
                    success=report.success,
                    failed=len(report.failures))
        return report

    def _record_outcomes(self, report: OperationReport, outcomes: List[ReconcileOutcome], step: str = "") -> None:
        for outcome in outcomes:
            name = f"{outcome.service}/{step}" if step else outcome.service
            report.add(
                name,
                outcome.ok,
                outcome.reason or outcome.status.value,
                **outcome.to_dict(),
            )

    def _store(self, directory: Optional[Path]) -> Path:
        return Path(directory) if directory is not None else Path(self.config.backup.directory)

    def _stateful(self, services: List[ManagedService]) -> List[ManagedService]:
        return [s for s in services if s.stateful]

    @staticmethod
    def _paths_present(service: ManagedService) -> bool:
        paths = list(service.config_paths)
        if service.data_path is not None:
            paths.append(service.data_path)
        return all(Path(p).exists() for p in paths)

    def _lookup(self, store: Path, snap_id: str) -> StoredSnapshot:
        snapshot = find_snapshot(store, self.config.backup.prefix, snap_id)
        if snapshot is None:
            raise PreconditionError(f"snapshot {snap_id} not found in {store}")
        return snapshot

    # -- snapshots -------------------------------------------------------

    def backup(
        self,
        directory: Optional[Path] = None,
        retention: Optional[int] = None,
        compress: Optional[bool] = None,
        names: Optional[List[str]] = None,
        operation: str = "backup",
    ) -> OperationReport:
        """Create one snapshot, then prune the store."""
        report = OperationReport(operation, started_at=self.clock())
        store = self._store(directory)
        keep = self.config.backup.retention if retention is None else retention
        compress = self.config.backup.compress if compress is None else compress
        report.data.update({"store": str(store), "retention": keep, "compress": compress})

        try:
            if retention is not None and retention < 0:
                raise PreconditionError("retention must be a non-negative integer")
            self._preflight(runtime=False)
            services = self._stateful(self.config.select(names))
            result = self.snapshots.run_backup(services, store, compress, keep)
        except SnapshotIOError as e:
            for member, error in e.failures.items():
                report.add(member, False, error)
            report.fail(str(e))
            return self._complete(report)
        except (StackOpsError, KeyError) as e:
            report.fail(str(e))
            return self._complete(report)

        snapshot = result.snapshot
        for service, members in snapshot.entries.items():
            report.add(service, True, f"{len(members)} member(s)", members=[m.to_dict() for m in members])
        for label, error in result.prune.errors.items():
            report.add(f"prune/{label}", False, error)
        report.data["snapshot"] = snapshot.to_dict()
        report.data["pruned"] = result.prune.removed
        report.data["kept"] = result.prune.kept
        return self._complete(report)

    def prune(self, directory: Optional[Path] = None, retention: Optional[int] = None) -> OperationReport:
        report = OperationReport("prune", started_at=self.clock())
        store = self._store(directory)
        keep = self.config.backup.retention if retention is None else retention
        if keep < 0:
            report.fail("retention must be a non-negative integer")
            return self._complete(report)
        result = prune(store, keep, self.config.backup.prefix)
        for label in result.removed:
            report.add(label, True, "removed")
        for label, error in result.errors.items():
            report.add(label, False, error)
        report.data.update({"store": str(store), "retention": keep, "removed": result.removed, "kept": result.kept})
        return self._complete(report)

    def list_backups(self, directory: Optional[Path] = None) -> List[StoredSnapshot]:
        return list_snapshots(self._store(directory), self.config.backup.prefix)

    def verify_backup(self, snap_id: str, directory: Optional[Path] = None) -> OperationReport:
        report = OperationReport("verify_backup", started_at=self.clock())
        try:
            snapshot = self._lookup(self._store(directory), snap_id)
            summary = verify_snapshot(snapshot)
        except StackOpsError as e:
            report.add(snap_id, False, str(e))
            return self._complete(report)
        report.add(
            snapshot.label,
            True,
            f"{summary['member_count']} member(s) verified",
            services=summary["services"],
            member_count=summary["member_count"],
        )
        return self._complete(report)

    def restore(
        self,
        snap_id: str,
        names: Optional[List[str]] = None,
        include_config: bool = False,
        restart: bool = True,
        directory: Optional[Path] = None,
    ) -> OperationReport:
        """Stop services, restore their data from a snapshot, start them again."""
        report = OperationReport("restore", started_at=self.clock())
        try:
            services = self._stateful(self.config.select(names))
            self._preflight(services)
            store = self._store(directory)
            require_paths([store])
            snapshot = self._lookup(store, snap_id)
            verify_snapshot(snapshot)
        except (StackOpsError, KeyError) as e:
            report.fail(str(e))
            return self._complete(report)
        report.data["snapshot"] = snapshot.label

        stopped = self.reconciler.reconcile_all(services, DesiredState.STOPPED)
        self._record_outcomes(report, stopped, "stop")
        if not all(outcome.ok for outcome in stopped):
            report.fail("could not stop every service; nothing restored")
            return self._complete(report)

        try:
            result = restore_snapshot(snapshot, services, include_config=include_config, clock=self.clock)
        except StackOpsError as e:
            report.add("restore", False, str(e))
        else:
            report.add("restore", True, f"restored {', '.join(result.restored) or 'nothing'}", **result.to_dict())

        if restart:
            started = [self.reconciler.reconcile(service) for service in services]
            self._record_outcomes(report, started, "start")
        return self._complete(report)

    # -- lifecycle -------------------------------------------------------

    def reconcile(self, names: Optional[List[str]] = None, desired: Optional[DesiredState] = None) -> OperationReport:
        report = OperationReport("reconcile", started_at=self.clock())
        try:
            services = self.config.select(names)
            self._preflight(services)
        except (StackOpsError, KeyError) as e:
            report.fail(str(e))
            return self._complete(report)
        self._record_outcomes(report, self.reconciler.reconcile_all(services, desired))
        return self._complete(report)

    def upgrade(self, names: Optional[List[str]] = None, backup: bool = True) -> OperationReport:
        """Snapshot, pull new images, recycle each service in declared order."""
        report = OperationReport("upgrade", started_at=self.clock())
        try:
            services = self.config.select(names)
            self._preflight(services)
        except (StackOpsError, KeyError) as e:
            report.fail(str(e))
            return self._complete(report)

        if backup:
            pre = self.backup(names=names, operation="pre_upgrade_backup")
            report.add("backup", pre.success, pre.error or "pre-upgrade snapshot created")
            if not pre.success:
                report.fail("pre-upgrade backup failed; nothing changed")
                return self._complete(report)

        for service in services:
            adapter = self.probe.adapter_for(service)
            container = self.config.runtime_for(service) in CONTAINER_RUNTIMES
            if container:
                try:
                    adapter.pull(service)
                except TransitionError as e:
                    report.add(f"{service.name}/pull", False, str(e))
                    continue
                report.add(f"{service.name}/pull", True, service.image or "")

            intermediate = DesiredState.ABSENT if container else DesiredState.STOPPED
            down = self.reconciler.reconcile(service, intermediate)
            self._record_outcomes(report, [down], intermediate.value)
            if not down.ok:
                continue
            up = self.reconciler.reconcile(service)
            self._record_outcomes(report, [up], service.desired_state.value)
        return self._complete(report)

    def teardown(
        self,
        confirm: bool = False,
        backup: bool = True,
        remove_images: bool = False,
        remove_data: bool = False,
        remove_config: bool = False,
    ) -> OperationReport:
        """Drive every service to Absent in reverse order, optionally purging files."""
        report = OperationReport("teardown", started_at=self.clock())
        try:
            if not confirm:
                raise PreconditionError("teardown needs explicit confirmation (--yes)")
            services = list(reversed(self.config.select()))
            self._preflight(services)
        except StackOpsError as e:
            report.fail(str(e))
            return self._complete(report)

        if backup:
            # services whose paths are already gone (e.g. after --remove-data) are skipped
            stateful = self._stateful(self.config.select())
            present = [s.name for s in stateful if self._paths_present(s)]
            skipped = [s.name for s in stateful if s.name not in present]
            if not present:
                report.add("backup", True, "nothing left to back up", skipped=skipped)
            else:
                pre = self.backup(names=present, operation="pre_teardown_backup")
                message = pre.error or "pre-teardown snapshot created"
                if skipped:
                    message = f"{message}; skipped {', '.join(skipped)} (paths missing)"
                report.add("backup", pre.success, message, skipped=skipped)
                if not pre.success:
                    report.fail("pre-teardown backup failed; nothing removed (use --no-backup to skip it)")
                    return self._complete(report)

        outcomes = self.reconciler.reconcile_all(services, DesiredState.ABSENT)
        self._record_outcomes(report, outcomes, "absent")

        for service, outcome in zip(services, outcomes):
            if not outcome.ok:
                continue
            if remove_images and self.config.runtime_for(service) in CONTAINER_RUNTIMES:
                try:
                    self.probe.adapter_for(service).remove_image(service)
                    report.add(f"{service.name}/image", True, service.image or "")
                except TransitionError as e:
                    report.add(f"{service.name}/image", False, str(e))
            paths = []
            if remove_data and service.data_path is not None:
                paths.append(Path(service.data_path))
            if remove_config:
                paths.extend(Path(p) for p in service.config_paths)
            for path in paths:
                try:
                    existed = remove_path(path)
                except OSError as e:
                    report.add(f"{service.name}/{path}", False, str(e))
                    continue
                report.add(f"{service.name}/{path}", True, "removed" if existed else "already gone")
        return self._complete(report)

    def status(self, names: Optional[List[str]] = None) -> OperationReport:
        report = OperationReport("status", started_at=self.clock())
        try:
            services = self.config.select(names)
        except KeyError as e:
            report.fail(f"unknown service(s): {e}")
            return self._complete(report)
        observations = self.probe.observe_all(services)
        for service in services:
            observation = observations[service.name]
            report.add(
                service.name,
                observation.status is not ObservedStatus.UNKNOWN,
                observation.detail or observation.status.value,
                status=observation.status.value,
                desired=service.desired_state.value,
                runtime=self.config.runtime_for(service),
            )
        return self._complete(report)

    def verify(self, names: Optional[List[str]] = None, http: bool = True) -> OperationReport:
        """Compare observed against desired state, then run the HTTP checks."""
        report = OperationReport("verify", started_at=self.clock())
        try:
            services = self.config.select(names)
        except KeyError as e:
            report.fail(f"unknown service(s): {e}")
            return self._complete(report)
        for service in services:
            observation = self.probe.observe(service)
            converged = is_converged(observation.status, service.desired_state)
            report.add(
                service.name,
                converged,
                f"observed {observation.status.value}, desired {service.desired_state.value}",
                detail=observation.detail,
            )
        for path in self._data_paths(services):
            report.add(f"path:{path}", path.is_dir(), "present" if path.is_dir() else "missing")
        if http:
            for result in HealthChecker(self.config.health, client=self.http_client).run():
                report.add(f"http:{result.name}", result.success, result.error or str(result.status_code),
                           url=result.url, status_code=result.status_code)
        return self._complete(report)

    @staticmethod
    def _data_paths(services: List[ManagedService]) -> List[Path]:
        return [Path(s.data_path) for s in services if s.data_path is not None and s.desired_state is DesiredState.RUNNING]

    # -- scheduling ------------------------------------------------------

    def default_entry_point(self) -> str:
        if self.config.schedule.entry_point:
            return self.config.schedule.entry_point
        found = shutil.which("stackops")
        if found:
            return found
        return f"{shlex.quote(sys.executable)} -m stackops"

    def schedule_install(
        self,
        entry_point: Optional[str] = None,
        directory: Optional[Path] = None,
        retention: Optional[int] = None,
        compress: Optional[bool] = None,
        expression: Optional[str] = None,
        replace: bool = False,
    ) -> OperationReport:
        report = OperationReport("schedule_install", started_at=self.clock())
        entry = entry_point or self.default_entry_point()
        try:
            self._preflight(runtime=False)
            keep = self.config.backup.retention if retention is None else retention
            if keep < 0:
                raise PreconditionError("retention must be a non-negative integer")
            command = build_backup_command(
                entry,
                self._store(directory),
                keep,
                self.config.backup.compress if compress is None else compress,
            )
            line = render_cron_line(expression or self.config.schedule.expression, command, self.config.schedule.cron_log)
            result = self.crontab.install(line, marker=self._marker(entry), replace=replace)
        except (StackOpsError, ValueError) as e:
            report.fail(str(e))
            return self._complete(report)
        message = "installed" if result.installed else "already installed; use --replace to overwrite"
        report.add("crontab", True, message, **result.to_dict())
        return self._complete(report)

    def schedule_remove(self, entry_point: Optional[str] = None) -> OperationReport:
        report = OperationReport("schedule_remove", started_at=self.clock())
        try:
            removed = self.crontab.remove(self._marker(entry_point or self.default_entry_point()))
        except StackOpsError as e:
            report.fail(str(e))
            return self._complete(report)
        report.add("crontab", True, f"removed {len(removed)} line(s)", removed=removed)
        return self._complete(report)

    def schedule_show(self, entry_point: Optional[str] = None) -> List[str]:
        return self.crontab.show(self._marker(entry_point or self.default_entry_point()))

    def schedule_run(
        self,
        expression: Optional[str] = None,
        directory: Optional[Path] = None,
        retention: Optional[int] = None,
        compress: Optional[bool] = None,
        scheduler: Optional[BackupScheduler] = None,
    ) -> BackupScheduler:
        """Run backups in the foreground on the cron expression until interrupted."""
        scheduler = scheduler or BackupScheduler()
        scheduler.add_backup_job(
            lambda: self.backup(directory=directory, retention=retention, compress=compress).exit_code,
            expression or self.config.schedule.expression,
            description="Monitoring stack backup",
        )
        scheduler.start()
        return scheduler

    @staticmethod
    def _marker(entry_point: str) -> str:
        return shlex.join(shlex.split(entry_point) + ["backup"])


__all__ = ["StackCoordinator"]
