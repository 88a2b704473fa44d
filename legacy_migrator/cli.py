"""
Command-line interface for the legacy migration engine.

QUICK START:
    legacy-migrator --entity patients
    legacy-migrator --all --batch-size 250 --strict
    legacy-migrator --entity orders --mode validate
    legacy-migrator --entity payments --mode rollback --yes

EXIT CODES:
    0    completed (including "nothing to migrate")
    1    unrecoverable connection or schema error
    2    configuration or contract error
    3    reconciliation failed and --strict was given
    130  interrupted

Connection strings and processing defaults come from LEGACY_MIGRATOR_*
environment variables (see ConfigManager); flags override them per run.
"""

import argparse
import logging
import signal
import sys
import threading

from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from .config.config_manager import ConfigPaths, get_config_manager
from .config.processing_defaults import ProcessingDefaults
from .database.connection_manager import SOURCE, TARGET, ConnectionManager
from .exceptions import FATAL_ERRORS, ConfigurationError, MigrationError
from .models import RunMode
from .monitoring.run_history import RunHistoryRecorder
from .processing.orchestrator import MigrationOrchestrator


EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2
EXIT_VALIDATION_FAILED = 3
EXIT_INTERRUPTED = 130

PACKAGE_LOGGER = 'legacy_migrator'


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="legacy-migrator",
        description="Differential migration and reconciliation of legacy tables into a redesigned schema"
    )

    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--entity", action="append", metavar="NAME",
                        help="Entity to run (repeatable; dependencies order the runs)")
    target.add_argument("--all", action="store_true", help="Run every entity in the contract")

    parser.add_argument("--mode", choices=[m.value for m in RunMode], default=RunMode.MIGRATE.value,
                        help="migrate (default), validate only, or rollback migrated rows")
    parser.add_argument("--batch-size", type=int,
                        help=f"Records per transaction, {ProcessingDefaults.MIN_BATCH_SIZE}-"
                             f"{ProcessingDefaults.MAX_BATCH_SIZE} (default: contract or "
                             f"{ProcessingDefaults.BATCH_SIZE})")
    parser.add_argument("--dry-run", action="store_true", help="Transform and count without writing")
    parser.add_argument("--correct", action="store_true",
                        help="Update each entity's correction_columns on rows already migrated")
    parser.add_argument("--limit", type=int, help="Process at most N pending rows per entity")
    parser.add_argument("--batch-delay-ms", type=int, help="Pause between batches in milliseconds")
    parser.add_argument("--contract", help="Migration contract path (JSON or YAML)")
    parser.add_argument("--log-level", default=ProcessingDefaults.LOG_LEVEL,
                        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
                        help=f"Logging level (default: {ProcessingDefaults.LOG_LEVEL})")
    parser.add_argument("--no-validate", action="store_true", help="Skip reconciliation after migrating")
    parser.add_argument("--strict", action="store_true",
                        help=f"Exit with {EXIT_VALIDATION_FAILED} when reconciliation fails")
    parser.add_argument("--report-dir", help="Directory for JSON run reports")
    parser.add_argument("--yes", action="store_true", help="Confirm a rollback")
    return parser


def setup_logging(log_level: str, log_dir: Path, session_id: str) -> Path:
    """Log to stdout and logs/migration_<session>.log; returns the log file path."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"migration_{session_id}.log"
    level = getattr(logging, log_level.upper())

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    # Remove any existing handlers to avoid duplicates on repeated calls
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)
    logger.propagate = False

    logger.info(f"Logging initialized: {log_file}")
    return log_file


def _install_interrupt_handler(orchestrator: MigrationOrchestrator, logger: logging.Logger):
    """First Ctrl+C stops at the next batch boundary; a second one aborts immediately."""
    if threading.current_thread() is not threading.main_thread():
        return None

    def handle_interrupt(signum, frame):
        if orchestrator.stop_requested:
            raise KeyboardInterrupt
        logger.warning("Interrupt received: stopping after the current batch (Ctrl+C again to abort)")
        orchestrator.request_stop()

    return signal.signal(signal.SIGINT, handle_interrupt)


def main(args: Optional[List[str]] = None, connect_factory: Optional[Callable] = None) -> int:
    """
    Main entry point for the CLI application.

    Args:
        args: Optional command line arguments (defaults to sys.argv)
        connect_factory: Optional replacement for pyodbc.connect

    Returns:
        Exit code
    """
    parsed = build_parser().parse_args(args)
    mode = RunMode(parsed.mode)
    session_id = datetime.now().strftime("%Y%m%d_%H%M%S")

    paths = ConfigPaths.from_environment()
    log_dir = Path(paths.log_dir)
    if not log_dir.is_absolute():
        log_dir = paths.base_config_path / log_dir
    setup_logging(parsed.log_level, log_dir, session_id)
    logger = logging.getLogger(__name__)
    if logger.isEnabledFor(logging.DEBUG):
        ProcessingDefaults.log_summary(logger)

    if mode is RunMode.ROLLBACK and not (parsed.yes or parsed.dry_run):
        logger.error("Rollback deletes every migrated row of the selected entities; re-run with --yes to confirm")
        return EXIT_CONFIG

    try:
        config_manager = get_config_manager()
        contract = config_manager.load_migration_contract(parsed.contract)
        entity_names = list(contract.entities) if parsed.all else parsed.entity

        params = config_manager.processing_params
        if parsed.batch_delay_ms is not None:
            params.batch_delay_ms = max(0, parsed.batch_delay_ms)
        report_dir = config_manager.resolve_path(parsed.report_dir or config_manager.paths.report_dir)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e.message}")
        return EXIT_CONFIG

    connections = ConnectionManager(
        config_manager.source_database,
        config_manager.target_database,
        pool_size=params.pool_size,
        max_retry_attempts=params.max_retry_attempts,
        retry_delay_seconds=params.retry_delay_seconds,
        connect_factory=connect_factory
    )
    run_history = RunHistoryRecorder(connections, contract.target_schema) if params.record_run_history else None
    orchestrator = MigrationOrchestrator(connections, contract, params=params, report_dir=report_dir,
                                         run_history=run_history, session_id=session_id)
    previous_handler = _install_interrupt_handler(orchestrator, logger)

    try:
        with connections:
            if mode is not RunMode.ROLLBACK:
                connections.test_connection(SOURCE)
            connections.test_connection(TARGET)

            orchestrator.run(
                entity_names,
                mode=mode,
                batch_size=parsed.batch_size,
                dry_run=parsed.dry_run,
                correction_mode=parsed.correct,
                limit=parsed.limit,
                validate=False if parsed.no_validate else None
            )
    except KeyboardInterrupt:
        logger.warning("Processing interrupted by user; committed batches are kept, re-run to resume")
        return EXIT_INTERRUPTED
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e.message}")
        return EXIT_CONFIG
    except FATAL_ERRORS as e:
        logger.critical(f"Migration aborted: {e.message}")
        return EXIT_FATAL
    except MigrationError as e:
        logger.error(f"Migration failed: {e.message}")
        return EXIT_FATAL
    except Exception as e:
        logger.exception(f"Processing failed: {e}")
        return EXIT_FATAL
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)

    if orchestrator.report_files:
        logger.info(f"Run reports written to {report_dir}")
    if orchestrator.interrupted:
        logger.warning("Session stopped early; re-run the same command to resume")
        return EXIT_INTERRUPTED
    if parsed.strict and orchestrator.validation_failed:
        logger.error("Reconciliation failed (--strict)")
        return EXIT_VALIDATION_FAILED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
