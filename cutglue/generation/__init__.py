"""
AI generation collaborator.
"""

from cutglue.generation.client import GenerationClient

__all__ = ["GenerationClient"]
