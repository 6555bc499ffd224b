"""Fair meeting point optimizer: multi-phase hypothesis search over travel time matrices."""

__version__ = '0.3.0'
