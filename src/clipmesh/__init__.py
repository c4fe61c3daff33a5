"""clipmesh: clipboard history replication between your own machines."""

__version__ = "0.1.0"
