"""GatewaySupervisor: keeps a local gateway process running with up-to-date credentials."""

__version__ = "0.1.0"
