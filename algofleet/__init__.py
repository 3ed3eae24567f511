"""
algofleet: orchestration and reconciliation for a fleet of remote broker
gateways.
"""

__version__ = "0.1.0"
