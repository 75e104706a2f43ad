"""
SDK for Credit Gate.

Provides the completion client used by the tailoring operations.
"""

from .llm_client import Completion, CompletionClient, parse_json_response

__all__ = ["Completion", "CompletionClient", "parse_json_response"]
