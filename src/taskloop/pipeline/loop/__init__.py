"""Execution loop: scheduling, gating, self-healing and run bookkeeping."""
