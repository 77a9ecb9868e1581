"""The automation agent: delegation registry, rule engine, executor, monitor."""
