"""Client for the SRUN captive-portal login protocol."""

__version__ = "0.1.0"
