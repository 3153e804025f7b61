"""Cluster teardown core.

This module provides the cloud-agnostic resource graph and the scheduler that
deletes its resources in dependency order.

Classes:
    ResourceGraph: Discovered resources keyed by "type:id"
    DeletionScheduler: Pass-based concurrent deletion until a fixed point
    DryRunReporter: Pass-by-pass deletion plan without side effects
    DiscoveryAdapter: Contract implemented by each cloud provider
    TeardownReporter: Rich console output for plans and results
"""

from __future__ import annotations

__all__ = [
    "ResourceGraph",
    "DeletionScheduler",
    "DryRunReporter",
    "DiscoveryAdapter",
    "TeardownReporter",
]
