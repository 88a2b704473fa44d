"""Contract-driven record transformation and named derivations."""
