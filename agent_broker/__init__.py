"""Agent Session Broker: local control plane for human-consented browser automation."""

__version__ = "1.0.0"
