"""
Job Scheduling Module

Job definitions and the cron scheduler live in lvlup.scheduling.jobs and
lvlup.scheduling.scheduler; only the throttle is exported here because the
rollup engines import it.
"""
from .throttle import ThrottleController

__all__ = ["ThrottleController"]
