"""
Composable request-processing stages.

A stage looks at the request before the handler runs and answers with
either Continue (optionally carrying state for later) or ShortCircuit
(a finished response; later stages and the handler are skipped). Stages
that continued get exit() called in reverse order with whatever response
came out, or None if the handler raised.

Control flow is carried by these return values, not by exceptions.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from fastapi import Request, Response

Handler = Callable[[Request], Awaitable[Response]]


@dataclass(frozen=True, slots=True)
class Continue:
    state: Any = None


@dataclass(frozen=True, slots=True)
class ShortCircuit:
    response: Response


StageResult = Continue | ShortCircuit


class RequestStage(ABC):
    @abstractmethod
    async def enter(self, request: Request) -> StageResult:
        """Decide whether the request may proceed."""

    async def exit(self, request: Request, state: Any, response: Response | None) -> None:
        """Observe the outcome. Default: nothing to do."""
        return None


class RequestPipeline:
    """Runs stages in order around a handler."""

    def __init__(self, stages: Sequence[RequestStage]) -> None:
        self._stages = tuple(stages)

    async def run(self, request: Request, handler: Handler) -> Response:
        entered: list[tuple[RequestStage, Any]] = []
        response: Response | None = None
        try:
            for stage in self._stages:
                result = await stage.enter(request)
                if isinstance(result, ShortCircuit):
                    response = result.response
                    return response
                entered.append((stage, result.state))

            response = await handler(request)
            return response
        finally:
            for stage, state in reversed(entered):
                await stage.exit(request, state, response)
