"""
SDK for ConsensusAI accounting.

Provides an LLM gateway client that meters every call it makes.
"""

from .openrouter_client import MeteredOpenRouter

__all__ = ["MeteredOpenRouter"]
