"""Warm pool management of secondary VPC IP addresses for pods, with Prometheus text parsing and rendering."""

__version__ = "0.1.0"