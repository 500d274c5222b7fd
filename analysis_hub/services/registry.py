"""Agent registry — owns the lifecycle of every agent in this process."""

from __future__ import annotations

from typing import Any, Protocol

from analysis_hub.errors import summarize_exception
from analysis_hub.utils.logger import logger


class ManagedAgent(Protocol):
    @property
    def name(self) -> str: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def health_check(self) -> dict[str, Any]: ...


class AgentRegistry:
    """Named collection of agents, started and stopped together."""

    def __init__(self) -> None:
        self._agents: dict[str, ManagedAgent] = {}

    def register(self, agent: ManagedAgent) -> None:
        if agent.name in self._agents:
            raise ValueError(f"Agent {agent.name!r} is already registered")
        self._agents[agent.name] = agent
        logger.info("[Registry] Registered %s", agent.name)

    def get(self, name: str) -> ManagedAgent | None:
        return self._agents.get(name)

    def names(self) -> list[str]:
        return list(self._agents)

    def __len__(self) -> int:
        return len(self._agents)

    async def start_all(self) -> list[str]:
        """Start every agent; returns the names that failed to start."""
        failed: list[str] = []
        for name, agent in self._agents.items():
            try:
                await agent.start()
            except Exception as exc:
                failed.append(name)
                logger.error("[Registry] %s failed to start: %s", name, summarize_exception(exc))
        logger.info(
            "[Registry] Started %d/%d agent(s)",
            len(self._agents) - len(failed), len(self._agents),
        )
        return failed

    async def stop_all(self) -> None:
        # Reverse order so the aggregator outlives the workers feeding it
        for name, agent in reversed(list(self._agents.items())):
            try:
                await agent.stop()
            except Exception as exc:
                logger.error("[Registry] %s failed to stop: %s", name, summarize_exception(exc))

    async def health(self) -> dict[str, dict[str, Any]]:
        report: dict[str, dict[str, Any]] = {}
        for name, agent in self._agents.items():
            try:
                report[name] = await agent.health_check()
            except Exception as exc:
                report[name] = {
                    "agent": name,
                    "status": "error",
                    "error": summarize_exception(exc),
                }
        return report
