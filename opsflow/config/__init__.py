"""Configuration models and built-in defaults."""
