"""
Model collaborators for concrete inference APIs.

Each adapter implements ``agent_duplex.model.ModelClient``.
"""

from agent_duplex.adapters.openai import OpenAIModelClient

__all__ = ["OpenAIModelClient"]
