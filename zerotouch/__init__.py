"""
Zero-touch Kubernetes node bootstrap.

This package turns a freshly booted machine into a running Kubernetes node:
it prepares the host, initializes or joins a cluster, and deploys a fixed,
ordered set of cluster addons. Every step is recorded in a durable state
store so an interrupted run resumes after the last completed stage.
"""

__version__ = "0.1.0"
