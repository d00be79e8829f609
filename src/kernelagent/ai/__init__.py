"""AI client, prompts, and reasoning-loop orchestration."""

from .client import AIClient, ClientSettings

__all__ = ["AIClient", "ClientSettings"]
