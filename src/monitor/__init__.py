"""
Monitor module.
Read-only queue statistics and health.
"""

from src.monitor.service import QueueMonitor

__all__ = ["QueueMonitor"]
