"""
Staged load testing for the log service.

This package drives randomized log submissions and health probes against the
service under a ramping virtual-user profile, gates the run on latency and
error-rate thresholds, and can confirm that posted logs reach the Kafka topic
the service publishes to.
"""

from .main import main

__all__ = ["main"]
