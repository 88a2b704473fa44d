"""
Migration Orchestrator - runs several entities in dependency order.

Entities are sorted topologically from their declared dependencies (contract
order breaks ties) and run one after another, never concurrently. Rollback
walks the same order in reverse so children are removed before parents.
A fatal error stops the whole session; the failed run is still reported.
"""

import logging
import threading

from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Union

from .migration_runner import EntityMigrationRunner
from ..config.config_manager import ProcessingParameters
from ..database.connection_manager import ConnectionManager
from ..exceptions import ConfigurationError
from ..models import MigrationContract, MigrationRun, RunMode
from ..monitoring.run_history import RunHistoryRecorder, save_run_report


def resolve_entity_order(contract: MigrationContract, entity_names: Iterable[str]) -> List[str]:
    """
    Order the requested entities so each comes after its dependencies.

    Dependencies that were not requested are assumed to be migrated already
    and only constrain the order of the requested ones.

    Raises:
        ConfigurationError: On an unknown entity or a dependency cycle
    """
    requested = []
    for name in entity_names:
        if name not in contract.entities:
            raise ConfigurationError(f"Unknown entity '{name}'. Known entities: {sorted(contract.entities)}")
        if name not in requested:
            requested.append(name)

    contract_order = {name: index for index, name in enumerate(contract.entities)}
    requested.sort(key=contract_order.get)
    wanted = set(requested)

    remaining_deps: Dict[str, set] = {
        name: {d for d in contract.entities[name].dependencies if d in wanted and d != name}
        for name in requested
    }

    ordered: List[str] = []
    while remaining_deps:
        ready = [name for name in requested if name in remaining_deps and not remaining_deps[name]]
        if not ready:
            raise ConfigurationError(f"Dependency cycle among entities: {sorted(remaining_deps)}")
        for name in ready:
            ordered.append(name)
            del remaining_deps[name]
        for deps in remaining_deps.values():
            deps.difference_update(ready)
    return ordered


class MigrationOrchestrator:
    """
    Sequences entity runs for one session.

    Args:
        connection_manager: Open ConnectionManager shared by every run
        contract: Migration contract
        params: Processing parameters passed to each runner
        report_dir: Directory for per-run JSON reports (None disables reports)
        run_history: Optional recorder writing one bookkeeping row per run
        session_id: Identifier used in report file names
    """

    def __init__(self, connection_manager: ConnectionManager, contract: MigrationContract,
                 params: Optional[ProcessingParameters] = None,
                 report_dir: Optional[Union[str, Path]] = None,
                 run_history: Optional[RunHistoryRecorder] = None,
                 session_id: Optional[str] = None,
                 runner_factory: Callable[..., EntityMigrationRunner] = EntityMigrationRunner,
                 sample_resources: bool = True):
        self.logger = logging.getLogger(__name__)
        self.connections = connection_manager
        self.contract = contract
        self.params = params or ProcessingParameters()
        self.report_dir = report_dir
        self.run_history = run_history
        self.session_id = session_id or datetime.now().strftime("%Y%m%d_%H%M%S")
        self._runner_factory = runner_factory
        self._sample_resources = sample_resources
        self._stop_event = threading.Event()
        self.runs: List[MigrationRun] = []
        self.report_files: List[Path] = []

    def request_stop(self) -> None:
        """Stop after the current batch; later entities are not started."""
        self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def run(self, entity_names: Iterable[str], mode: RunMode = RunMode.MIGRATE,
            batch_size: Optional[int] = None, dry_run: bool = False, correction_mode: bool = False,
            limit: Optional[int] = None, validate: Optional[bool] = None) -> List[MigrationRun]:
        """
        Run the requested entities.

        Returns:
            Finished runs in execution order

        Raises:
            ConfigurationError: On unknown entities or a dependency cycle
            DatabaseConnectionError, SchemaMismatchError: After the failed run is reported
        """
        order = resolve_entity_order(self.contract, entity_names)
        if mode is RunMode.ROLLBACK:
            order.reverse()
        self.logger.info(f"Session {self.session_id}: {mode.value} {', '.join(order)}")

        for name in order:
            if self.stop_requested:
                self.logger.warning(f"Stop requested, not starting {name}")
                break

            runner = self._runner_factory(
                self.connections, self.contract, self.contract.get_entity(name),
                params=self.params, batch_size=batch_size, dry_run=dry_run,
                correction_mode=correction_mode, limit=limit, validate=validate,
                stop_event=self._stop_event, sample_resources=self._sample_resources
            )
            try:
                runner.run(mode)
            except Exception:
                self._record(runner.current_run)
                self.logger.error(f"Session {self.session_id} stopped: {name} failed; "
                                  f"remaining entities were not run")
                raise
            self._record(runner.current_run)

        self._log_session_summary()
        return self.runs

    def _record(self, run: Optional[MigrationRun]) -> None:
        if run is None:
            return
        self.runs.append(run)
        if self.report_dir is not None:
            self.report_files.append(save_run_report(run, self.report_dir, self.session_id))
        if self.run_history is not None:
            self.run_history.record(run)

    @property
    def validation_failed(self) -> bool:
        return any(run.validation is not None and not run.validation.validation_passed for run in self.runs)

    @property
    def interrupted(self) -> bool:
        return self.stop_requested or any(run.interrupted for run in self.runs)

    def _log_session_summary(self) -> None:
        self.logger.info("=" * 82)
        self.logger.info(f" SESSION {self.session_id} COMPLETE")
        self.logger.info("=" * 82)
        for run in self.runs:
            stats = run.stats or {}
            line = (f"  {run.entity_type}: {run.state.value}"
                    f"{' (interrupted)' if run.interrupted else ''}")
            if run.mode is RunMode.MIGRATE:
                line += (f" newly_migrated={stats.get('newly_migrated', 0)} "
                         f"already_migrated={stats.get('already_migrated', 0)} "
                         f"skipped={stats.get('skipped', 0)} errors={stats.get('errors', 0)}")
            elif run.mode is RunMode.ROLLBACK:
                line += f" deleted={run.deleted_count}"
            if run.validation is not None:
                line += f" validation={'PASSED' if run.validation.validation_passed else 'FAILED'}"
            self.logger.info(line)
