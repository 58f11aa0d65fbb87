"""
LangGraph workflow for the Rental Listing Assistant.
"""

from .graph import ChatWorkflow
from .metrics import TurnMetrics

__all__ = [
    "ChatWorkflow",
    "TurnMetrics",
]
