"""Batch Analysis - remote queue orchestration for audio analysis scripts.

Schedules analysis scripts against audio recordings on a PBS batch queue and
tracks every job item through its lifecycle.
"""

__version__ = "0.1.0"
