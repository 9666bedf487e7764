"""Kubernetes operator distributing registry CA certificates to every node."""

__version__ = "0.1.0"
