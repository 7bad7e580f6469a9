"""
Render Job Queue

A durable job queue with a pluggable workflow state machine: jobs are leased
atomically by polling workers, advanced state by state, retried with
exponential backoff and confirmed through an optional webhook phase.
"""

__version__ = "1.0.0"
