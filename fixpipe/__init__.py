"""
fixpipe - Autonomous multi-agent code-fixing pipeline.

This package drives AI coding agents through the scan, validate, plan,
consolidate, exec and verify phases, running units of work in parallel git
worktrees and merging the resulting branches back one at a time.
"""

__version__ = "0.1.0"
