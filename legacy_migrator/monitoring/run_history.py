"""
Run reporting: JSON run reports and the optional bookkeeping table.

The JSON report is the canonical machine-readable output of a run. The
bookkeeping table ([target_schema].[migration_run_log]) is an optional
collaborator that records one row per entity run: entity type, run type,
counts, status, error summary and timestamps.
"""

import json
import logging

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

import pyodbc

from ..database.connection_manager import ConnectionManager, TARGET
from ..models import MigrationRun
from ..utils import SqlUtils, json_default


RUN_LOG_TABLE = 'migration_run_log'


def build_run_report(run: MigrationRun, session_id: str) -> Dict[str, Any]:
    """Assemble the report dictionary for one finished run."""
    validation = run.validation.to_dict() if run.validation is not None else None
    return {
        'session_id': session_id,
        'run_timestamp': datetime.now().isoformat(),
        'entity_type': run.entity_type,
        'mode': run.mode.value,
        'dry_run': run.dry_run,
        'correction_mode': run.correction_mode,
        'batch_size': run.batch_size,
        'status': run.state.value,
        'state_history': [state.value for state in run.state_history],
        'started_at': run.started_at,
        'completed_at': run.completed_at,
        'error_summary': run.error_summary,
        'deleted_count': run.deleted_count,
        'interrupted': run.interrupted,
        'stats': run.stats,
        'validation': validation
    }


def save_run_report(run: MigrationRun, report_dir: Union[str, Path], session_id: str) -> Path:
    """
    Write reports/run_<entity>_<session>.json.

    Returns:
        Path of the written report
    """
    report_path = Path(report_dir)
    report_path.mkdir(parents=True, exist_ok=True)
    report_file = report_path / f"run_{run.entity_type}_{session_id}.json"

    with open(report_file, 'w', encoding='utf-8') as f:
        json.dump(build_run_report(run, session_id), f, indent=2, default=json_default)

    logging.getLogger(__name__).info(f"Run report saved to: {report_file}")
    return report_file


class RunHistoryRecorder:
    """
    Persists run summaries to the bookkeeping table.

    A failure to write history is logged and never fails the run itself.
    """

    def __init__(self, connection_manager: ConnectionManager, target_schema: str,
                 table_name: str = RUN_LOG_TABLE):
        self.connections = connection_manager
        self.table = SqlUtils.qualified_table_name(target_schema, table_name)
        self.logger = logging.getLogger(__name__)

    def record(self, run: MigrationRun) -> Optional[int]:
        """
        Insert one row describing a finished run.

        Returns:
            Number of rows written (1), or None if the bookkeeping store rejected it
        """
        stats = run.stats or {}
        error_summary = run.error_summary
        if not error_summary and stats.get('errors'):
            error_summary = json.dumps(stats.get('failures', [])[:50], default=json_default)

        sql = (f"INSERT INTO {self.table} "
               f"([entity_type], [run_type], [status], [started_at], [completed_at], [source_total], "
               f"[already_migrated], [newly_migrated], [skipped], [errors], [deleted_count], [error_summary]) "
               f"VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)")
        params = (
            run.entity_type,
            run.mode.value + (' (dry run)' if run.dry_run else ''),
            run.state.value,
            run.started_at,
            run.completed_at,
            stats.get('source_total', 0),
            stats.get('already_migrated', 0),
            stats.get('newly_migrated', 0),
            stats.get('skipped', 0),
            stats.get('errors', 0),
            run.deleted_count,
            error_summary[:4000] if error_summary else None
        )

        try:
            with self.connections.transaction(TARGET) as cursor:
                cursor.execute(sql, params)
            self.logger.debug(f"Run history recorded for {run.entity_type}")
            return 1
        except pyodbc.Error as e:
            self.logger.warning(f"Could not record run history for {run.entity_type}: {e}")
            return None
