"""
Worker module.
Leases ready jobs and drives them through their workflows.
"""

from renderqueue.worker.main import Worker, run

__all__ = ["Worker", "run"]
