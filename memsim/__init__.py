"""Simulated memory server: paged user memory, swap file and a TCP request protocol."""

__version__ = "0.1.0"