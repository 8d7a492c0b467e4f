"""
VPS Billing

Usage-based billing reconciliation for resold VPS instances: prepaid balances
are debited exactly once per elapsed unit of service, whether the sweep runs
in the API server or in a standalone daemon.
"""

__version__ = "1.0.0"
