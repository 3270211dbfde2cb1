"""
Sweeper module.
Promotes due delayed jobs and purges expired finished jobs.
"""

from src.sweeper.main import Sweeper

__all__ = ["Sweeper"]
