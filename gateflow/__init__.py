"""
GATEFLOW — Quality-Gated Task Graph Orchestration
=================================================
Builds dependency graphs with injected code-review and QA checkpoints,
matches nodes to capability-profiled workers, and drives execution through
a single-writer asyncio run loop with checkpoint-based recovery.
"""

__version__ = "0.1.0"
