"""Agents shipped with the companion."""

from companion.agent.agents.health_butler import HealthButlerAgent, HealthSettings

__all__ = [
    "HealthButlerAgent",
    "HealthSettings",
]
