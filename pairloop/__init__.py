"""
pairloop - task-state and consensus orchestration for paired coding agents.

An Executor agent works through a persisted task list (the PRD) while a
Reviewer agent validates upcoming steps ahead of it. Disagreements are
settled by a bounded, anonymized negotiation before the Executor proceeds.
"""

__version__ = "0.1.0"
