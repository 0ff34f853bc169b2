"""Provide the public `plan_orchestrator` package exports."""

from __future__ import annotations

from .graph import build_graph, calculate_graph_stats

__version__ = "0.1.0"

__all__ = ["build_graph", "calculate_graph_stats", "__version__"]
