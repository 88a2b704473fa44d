"""Source and target store access: connections, lookups, differential sets and batch loads."""
