"""Monitoring agent core: events, priority buffering and draining, Flow node discovery and cloud metadata lookups."""

__version__ = "0.1.0"