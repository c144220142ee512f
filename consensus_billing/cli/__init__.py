"""
Command-line interface for ConsensusAI accounting.
"""
