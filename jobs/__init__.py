"""
Stake Reward Distributor - Jobs Module

This module contains the offline batch jobs of the distributor:
- distribution_run: daily snapshot, allocation, settlement and verification

Reliability Level: Offline Job (Cold Path)
"""

from jobs.distribution_run import (
    DistributionPipeline,
    RunContext,
    build_ledger,
    store_url,
)

__all__ = [
    "DistributionPipeline",
    "RunContext",
    "build_ledger",
    "store_url",
]
