"""Energy and resource-usage accounting for nodes, containers and processes."""

__version__ = "0.1.0"