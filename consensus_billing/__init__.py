"""
ConsensusAI usage and billing accounting.

Records billable usage events, folds them into per-user aggregates and
manages subscriptions, quotas and invoices.
"""

__version__ = "0.3.0"
