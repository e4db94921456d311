"""HVACDesk billing and support control plane."""

__version__ = "0.4.0"
