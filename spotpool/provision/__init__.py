"""Ordered construction and teardown of the worker pool's cloud resources."""
