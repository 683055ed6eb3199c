"""Stand-in worker programs used by local runs and integration tests."""
