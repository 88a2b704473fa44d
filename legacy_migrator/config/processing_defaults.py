"""
Centralized configuration defaults for migration runs.

This module defines operational configuration constants used throughout the system.
These are processing infrastructure settings (not entity-specific), shared across all
entity runs. Environment variables and CLI arguments can override these defaults.
"""


class ProcessingDefaults:
    """
    Centralized operational configuration for migration runs.

    All values are defaults that can be overridden at runtime:
    - legacy-migrator --entity patients --batch-size 250 --batch-delay-ms 100
    - LEGACY_MIGRATOR_BATCH_SIZE=250 legacy-migrator --entity patients

    Entity descriptors may carry their own batch size, which takes precedence
    over BATCH_SIZE but not over an explicit --batch-size.
    """

    # Batch processing
    BATCH_SIZE = 500  # Records per load batch (bounded to 50-1000)
    MIN_BATCH_SIZE = 50
    MAX_BATCH_SIZE = 1000
    BATCH_DELAY_MS = 0  # Fixed pause between batches to cap request rate

    # Paging of large reads
    LOOKUP_PAGE_SIZE = 5000  # Rows per lookup map page
    SOURCE_PAGE_SIZE = 5000  # Rows per candidate source page

    # Retry (connection-level failures only)
    MAX_RETRY_ATTEMPTS = 3
    RETRY_DELAY_SECONDS = 1  # Backoff base: 1s, 2s, 4s

    # Connection pooling
    POOL_SIZE = 4  # Connections per store
    CONNECTION_TIMEOUT = 30  # Connection timeout in seconds

    # Lookups
    RECHECK_ON_MISS = True  # Query the target once for a lookup miss before skipping

    # Validation
    ENABLE_VALIDATION = True
    VALIDATION_SAMPLE_SIZE = 25  # Rows compared field-by-field after a run

    # Reporting
    PROGRESS_REPORTING_INTERVAL = 1  # Log progress every N batches
    RECORD_RUN_HISTORY = False  # Persist run summaries to migration_run_log

    # Logging
    LOG_LEVEL = "INFO"  # Default logging level (CRITICAL, ERROR, WARNING, INFO, DEBUG)

    @classmethod
    def to_dict(cls) -> dict:
        """
        Export all defaults as a dictionary.

        Returns:
            Dictionary of all ProcessingDefaults class attributes.
        """
        return {
            key: getattr(cls, key)
            for key in dir(cls)
            if not key.startswith('_') and key.isupper()
        }

    @classmethod
    def log_summary(cls, logger=None):
        """
        Log a summary of all operational defaults.

        Args:
            logger: Optional logger instance. If None, prints to stdout.
        """
        config_dict = cls.to_dict()
        summary = "\n".join([f"  {key}: {value}" for key, value in sorted(config_dict.items())])
        message = f"Processing Configuration Defaults:\n{summary}"

        if logger:
            logger.info(message)
        else:
            print(message)
