"""Domain models for opsflow."""
