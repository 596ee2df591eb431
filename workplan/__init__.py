"""
Workplan - Milestone and task execution for agent-driven delivery.

This package walks a persisted work plan milestone by milestone, dispatching
each task to a worker, running review/fix cycles, and escalating to a human
when the same issue survives three consecutive reviews.
"""

__version__ = "0.1.0"
