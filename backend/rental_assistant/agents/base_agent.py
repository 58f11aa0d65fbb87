"""
Base agent class providing prompt loading and settings access.
"""

from typing import Optional

from ..config import Settings, get_settings, load_system_prompt


class BaseAgent:
    """
    Common base for prompt-driven agents.

    The system prompt is read from ``prompts/<agent_name>_prompt.txt`` on
    first use.
    """

    def __init__(self, agent_name: str, settings: Optional[Settings] = None):
        """
        Initialize the agent.

        Args:
            agent_name: Name of the agent (used for loading prompts)
            settings: Optional settings override
        """
        self.agent_name = agent_name
        self.settings = settings or get_settings()
        self._system_prompt: Optional[str] = None

    @property
    def system_prompt(self) -> str:
        """Get the system prompt for this agent."""
        if self._system_prompt is None:
            self._system_prompt = load_system_prompt(self.agent_name, self.settings)
        return self._system_prompt
