"""Edgewalker - reactive workflow graph execution engine.

Walks a compiled workflow graph edge by edge as node completion events
arrive, with exactly-once firing and parallel fan-out/fan-in.
"""

__version__ = "0.1.0"
