"""
Core enumerations used throughout the pipeline.
"""

from enum import Enum


class SystemState(Enum):
    """
    Lifecycle state of a long-running service.

    Values:
        STOPPED: Background tasks are not running
        RUNNING: Background tasks are active
    """
    STOPPED = "stopped"
    RUNNING = "running"
