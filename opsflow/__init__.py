"""opsflow: autonomous workflow orchestration for supply-chain operations."""

__version__ = "0.4.0"
