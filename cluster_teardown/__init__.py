"""Cluster Teardown - dependency-ordered deletion of cluster cloud resources."""

__version__ = "0.1.0"
