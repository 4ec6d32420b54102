"""
Spot worker pool autoscaler driven by work queue metrics.

This package keeps a pool of spot workers sized to the backlog of an SQS work
queue: it samples CloudWatch queue metrics, decides whether to add or remove a
worker, and adjusts the desired capacity of the worker Auto Scaling group.
"""

__version__ = "0.1.0"
