"""
Background jobs module.
"""

from menuqr.jobs.subscription_jobs import run_subscription_jobs

__all__ = ["run_subscription_jobs"]
