"""
Worker module.
Dispatches ready jobs to a pool of concurrent worker slots.
"""
