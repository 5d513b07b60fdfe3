"""
Quantaflow - circuit optimization job orchestration

Runs one optimization job at a time, broadcasts its lifecycle on a typed
event bus and keeps a reconnecting link to remote event sources.
"""

__version__ = "0.1.0"
