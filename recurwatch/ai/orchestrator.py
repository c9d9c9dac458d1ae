"""
Agentic Orchestrator

Runs a bounded tool-calling loop to verify one alert:

    1. Send the system prompt (tool list, budget) and the alert
    2. Model replies with a tool request  -> run it, send the result back
    3. Model replies with a final answer  -> parse VERDICT / EXPLANATION
    4. Budget or wall-clock exceeded      -> OrchestratorError

CRITICAL: The orchestrator only produces a VerificationAnnotation.
It has no way to change an alert, a subscription or a verdict; the
tools it can call are read-only.
"""

import asyncio
from typing import Optional

from recurwatch.ai.interface import ChatBackend, ChatMessage, OrchestratorError
from recurwatch.ai.parsing import parse_tool_call, parse_verdict
from recurwatch.ai.prompts import VERIFY_SYSTEM_PROMPT
from recurwatch.models.alert import ToolCallRecord, VerificationAnnotation
from recurwatch.queries.executor import ToolExecutor


class AIOrchestrator:
    """Tool-calling verifier with a per-call tool budget and timeout."""

    def __init__(
        self,
        backend: ChatBackend,
        tools: ToolExecutor,
        max_tool_calls: int = 4,
        timeout_seconds: float = 60.0,
    ):
        self._backend = backend
        self._tools = tools
        self._max_tool_calls = max_tool_calls
        self._timeout_seconds = timeout_seconds

    @property
    def model_name(self) -> str:
        return self._backend.model_name

    async def aclose(self) -> None:
        await self._backend.aclose()

    async def verify(
        self,
        subject: str,
        instructions: Optional[str] = None,
    ) -> VerificationAnnotation:
        """
        Verify one alert.

        Args:
            subject: Description of the alert and the subscription(s) it covers
            instructions: Extra guidance appended to the request

        Raises:
            OrchestratorError: Budget exceeded, unknown tool, or timed out
            AIError: Backend failure
        """
        try:
            return await asyncio.wait_for(
                self._run(subject, instructions),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise OrchestratorError(
                f"Verification did not finish within {self._timeout_seconds}s"
            ) from e

    async def _run(
        self,
        subject: str,
        instructions: Optional[str],
    ) -> VerificationAnnotation:
        request = subject if not instructions else f"{subject}\n\n{instructions}"
        messages = [
            ChatMessage(
                role="system",
                content=VERIFY_SYSTEM_PROMPT.format(
                    tools=self._tools.describe(),
                    max_tool_calls=self._max_tool_calls,
                ),
            ),
            ChatMessage(role="user", content=request),
        ]
        records: list[ToolCallRecord] = []

        while True:
            reply = await self._backend.chat(messages)
            call = parse_tool_call(reply)

            if call is None:
                corroborated, explanation = parse_verdict(reply)
                return VerificationAnnotation(
                    explanation=explanation,
                    corroborated=corroborated,
                    tool_calls=records,
                    model=self._backend.model_name,
                )

            name, arguments = call
            if name not in self._tools.tool_names:
                raise OrchestratorError(f"Model requested unknown tool: {name}")
            if len(records) >= self._max_tool_calls:
                raise OrchestratorError(
                    f"Tool budget of {self._max_tool_calls} calls exceeded"
                )

            result = await self._tools.execute(name, arguments)
            output = result.to_output()
            records.append(ToolCallRecord(
                name=name,
                arguments=arguments,
                success=result.success,
                output=output,
            ))
            messages.append(ChatMessage(role="assistant", content=reply))
            messages.append(ChatMessage(role="tool", content=output))
