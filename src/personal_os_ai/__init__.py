"""Personal OS AI - cost-governed chat gateway for the Personal Operating System."""

__version__ = "0.1.0"
