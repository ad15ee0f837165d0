"""reqgraph: trace the dependency graph behind recorded HTTP traffic."""

__version__ = "0.3.0"
