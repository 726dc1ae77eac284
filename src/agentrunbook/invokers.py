"""
Agent invokers — the collaborator boundary the driver dispatches steps to.

The driver only needs:

    async invoke(role, instruction, context) -> output

Returning is success; raising is the error result. Retries, if any,
belong to the invoker, never to the driver.

Adapters:
    CallableInvoker   plain function (sync functions run in a worker thread)
    RunnableInvoker   LangChain Runnable per role (ainvoke with a HumanMessage)
    LangGraphInvoker  LangGraph ReAct agent per role, persona from a registry
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import TYPE_CHECKING, Any, Callable, Mapping, Protocol, runtime_checkable

from langchain_core.messages import BaseMessage, HumanMessage
from langchain_core.runnables import Runnable

from .config import DEFAULT_MODEL

if TYPE_CHECKING:
    from .registry import DocumentRegistry

logger = logging.getLogger(__name__)


@runtime_checkable
class AgentInvoker(Protocol):
    """Dispatches one resolved instruction to a named agent role."""

    async def invoke(
        self,
        role: str,
        instruction: str,
        context: Mapping[str, Any],
    ) -> Any:
        ...


class CallableInvoker:
    """
    Wraps a function ``fn(role, instruction, context)`` as an invoker.

    Coroutine functions are awaited directly. Plain functions run via
    asyncio.to_thread so a slow call does not stall other branches.
    """

    def __init__(self, fn: Callable[[str, str, Mapping[str, Any]], Any]):
        self.fn = fn

    async def invoke(self, role: str, instruction: str, context: Mapping[str, Any]) -> Any:
        if inspect.iscoroutinefunction(self.fn):
            return await self.fn(role, instruction, context)
        result = await asyncio.to_thread(self.fn, role, instruction, context)
        if inspect.isawaitable(result):
            return await result
        return result


def format_context(context: Mapping[str, Any]) -> str:
    """Render upstream outputs as a markdown section for the agent."""
    if not context:
        return ""
    lines = ["# Context from previous steps", ""]
    for step_id, output in context.items():
        if not isinstance(output, str):
            output = json.dumps(output, indent=2, default=str)
        lines.append(f"## Step {step_id}")
        lines.append(output.strip())
        lines.append("")
    return "\n".join(lines).strip()


def compose_message(instruction: str, context: Mapping[str, Any]) -> str:
    """Instruction first, then the upstream context block."""
    block = format_context(context)
    if not block:
        return instruction
    return f"{instruction}\n\n{block}\n"


def extract_output(response: Any) -> Any:
    """Pull the final answer out of a chat-model or agent-graph response."""
    if isinstance(response, BaseMessage):
        return response.content
    if isinstance(response, dict) and "messages" in response:
        messages = response.get("messages") or []
        if messages:
            last = messages[-1]
            return last.content if isinstance(last, BaseMessage) else last
        return ""
    return response


class RunnableInvoker:
    """
    Dispatches to LangChain Runnables, one per role.

    Each call sends ``{"messages": [HumanMessage(...)]}``, the input shape
    LangGraph agents expect, and returns the content of the last message.

    Usage:
        invoker = RunnableInvoker({"code-reviewer": reviewer_agent}, default=generalist)
    """

    def __init__(
        self,
        runnables: Mapping[str, Runnable] | None = None,
        default: Runnable | None = None,
    ):
        self.runnables = dict(runnables or {})
        self.default = default

    def _runnable_for(self, role: str) -> Runnable:
        runnable = self.runnables.get(role, self.default)
        if runnable is None:
            raise LookupError(
                f"No runnable registered for role '{role}'. "
                f"Known roles: {sorted(self.runnables)}"
            )
        return runnable

    async def invoke(self, role: str, instruction: str, context: Mapping[str, Any]) -> Any:
        runnable = self._runnable_for(role)
        message = HumanMessage(content=compose_message(instruction, context))
        logger.debug(f"Invoking runnable for role '{role}' ({len(message.content)} chars)")
        response = await runnable.ainvoke({"messages": [message]})
        return extract_output(response)


class LangGraphInvoker(RunnableInvoker):
    """
    Builds a LangGraph ReAct agent per role on first use.

    The role's system prompt is the body of the agent persona document
    registered under that role name, when there is one.
    """

    def __init__(
        self,
        registry: DocumentRegistry | None = None,
        default_model: str = DEFAULT_MODEL,
        tools: list[Any] | None = None,
    ):
        super().__init__()
        self.registry = registry
        self.default_model = default_model
        self.tools = tools or []

    def system_prompt_for(self, role: str) -> tuple[str, str]:
        """(system prompt, model) for a role."""
        persona = self.registry.get(role) if self.registry is not None else None
        if persona is None:
            return f"You are the {role} agent. Complete the task you are given.", self.default_model

        model = persona.metadata.model
        if not model or ":" not in str(model):
            model = self.default_model
        return persona.body.strip(), str(model)

    def _runnable_for(self, role: str) -> Runnable:
        if role not in self.runnables:
            from langchain.chat_models import init_chat_model
            from langgraph.prebuilt import create_react_agent

            prompt, model = self.system_prompt_for(role)
            llm = init_chat_model(model)
            self.runnables[role] = create_react_agent(llm, self.tools, prompt=prompt)
            logger.info(f"Built LangGraph agent for role '{role}' ({model})")
        return self.runnables[role]
