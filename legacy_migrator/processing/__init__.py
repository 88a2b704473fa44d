"""
Processing module for the legacy migration engine.

EntityMigrationRunner drives one entity through its state machine;
MigrationOrchestrator sequences several entities by dependency order.

NOTE: Import the runner and orchestrator from their modules; they pull in the
database layer, which imports the configuration package.
"""
