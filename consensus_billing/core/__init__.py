"""
Core modules for ConsensusAI accounting.

This package contains event recording, usage aggregation, tier limits,
pricing, budget alerts and the billing engine.
"""
