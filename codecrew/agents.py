"""Specialized agent roles and the executor that runs one agent on one task."""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from codecrew.agent_loop import TurnOptions, execute_turn
from codecrew.llm import LLMProvider
from codecrew.logging import get_logger
from codecrew.session import new_session
from codecrew.tools.registry import ToolContext, ToolPolicy, ToolRegistry

log = get_logger(__name__)

MAX_TURNS_EXHAUSTED = "Agent reached maximum turns without completing task"


class AgentRole(str, Enum):
    RESEARCHER = "researcher"
    CODER = "coder"
    TESTER = "tester"
    REVIEWER = "reviewer"
    OPTIMIZER = "optimizer"
    PLANNER = "planner"


@dataclass(frozen=True)
class AgentDefinition:
    """Role prompt plus the tools the role may see.

    An empty ``allowed_tools`` list leaves the registry unfiltered.
    """

    role: AgentRole
    system_prompt: str
    allowed_tools: tuple[str, ...] = ()
    max_turns: int = 20


DEFAULT_MAX_TURNS: dict[AgentRole, int] = {
    AgentRole.RESEARCHER: 20,
    AgentRole.TESTER: 15,
    AgentRole.REVIEWER: 10,
    AgentRole.OPTIMIZER: 15,
    AgentRole.PLANNER: 10,
    AgentRole.CODER: 20,
}


AGENT_ROLES: dict[AgentRole, AgentDefinition] = {
    AgentRole.RESEARCHER: AgentDefinition(
        role=AgentRole.RESEARCHER,
        system_prompt=(
            "You are a code researcher agent. Your role is to:\n"
            "- Explore and understand existing codebases\n"
            "- Find relevant code patterns and examples\n"
            "- Identify dependencies and relationships\n"
            "- Document your findings clearly\n\n"
            "Use tools to search, read files, and analyze code structure."
        ),
        allowed_tools=("read_file", "search_code", "list_files"),
        max_turns=DEFAULT_MAX_TURNS[AgentRole.RESEARCHER],
    ),
    AgentRole.CODER: AgentDefinition(
        role=AgentRole.CODER,
        system_prompt=(
            "You are a code generation agent. Your role is to:\n"
            "- Write high-quality, production-ready code\n"
            "- Follow the conventions of the surrounding codebase\n"
            "- Ensure code is syntactically valid\n"
            "- Write clean, maintainable code\n\n"
            "Use the shell to check syntax and types after writing code."
        ),
        allowed_tools=("read_file", "write_file", "list_files", "search_code", "shell"),
        max_turns=DEFAULT_MAX_TURNS[AgentRole.CODER],
    ),
    AgentRole.TESTER: AgentDefinition(
        role=AgentRole.TESTER,
        system_prompt=(
            "You are a test generation agent. Your role is to:\n"
            "- Write comprehensive test suites\n"
            "- Achieve high code coverage\n"
            "- Test edge cases and error conditions\n"
            "- Keep tests reliable and maintainable\n\n"
            "Write tests to files and run them with the shell."
        ),
        allowed_tools=("read_file", "write_file", "list_files", "search_code", "shell"),
        max_turns=DEFAULT_MAX_TURNS[AgentRole.TESTER],
    ),
    AgentRole.REVIEWER: AgentDefinition(
        role=AgentRole.REVIEWER,
        system_prompt=(
            "You are a code review agent. Your role is to:\n"
            "- Identify code quality issues\n"
            "- Check for security vulnerabilities\n"
            "- Provide actionable feedback\n\n"
            "Read and search the code to find issues."
        ),
        allowed_tools=("read_file", "list_files", "search_code"),
        max_turns=DEFAULT_MAX_TURNS[AgentRole.REVIEWER],
    ),
    AgentRole.OPTIMIZER: AgentDefinition(
        role=AgentRole.OPTIMIZER,
        system_prompt=(
            "You are a code optimization agent. Your role is to:\n"
            "- Reduce code complexity\n"
            "- Eliminate duplication\n"
            "- Improve performance\n"
            "- Refactor for maintainability\n\n"
            "Use the shell to measure before and after a change."
        ),
        allowed_tools=("read_file", "write_file", "search_code", "shell"),
        max_turns=DEFAULT_MAX_TURNS[AgentRole.OPTIMIZER],
    ),
    AgentRole.PLANNER: AgentDefinition(
        role=AgentRole.PLANNER,
        system_prompt=(
            "You are a task planning agent. Your role is to:\n"
            "- Break down complex tasks into subtasks\n"
            "- Identify dependencies between tasks\n"
            "- Estimate complexity and effort\n\n"
            "Use tools to analyze requirements and create structured plans."
        ),
        allowed_tools=("read_file", "list_files", "search_code"),
        max_turns=DEFAULT_MAX_TURNS[AgentRole.PLANNER],
    ),
}


# ---------------------------------------------------------------------------
# Role selection
# ---------------------------------------------------------------------------

# (keywords, weight) groups per role; every keyword found in the description
# adds its group's weight.
ROLE_PATTERNS: dict[AgentRole, list[tuple[tuple[str, ...], int]]] = {
    AgentRole.RESEARCHER: [
        (("research", "find", "analyze", "explore", "investigate", "discover", "understand", "examine"), 3),
        (("pattern", "example", "reference", "dependency", "structure", "architecture", "how", "why"), 1),
    ],
    AgentRole.TESTER: [
        (("test", "coverage", "spec", "assertion", "mock", "unit test", "e2e", "integration test"), 3),
        (("validate", "verify", "check", "expect", "should"), 1),
    ],
    AgentRole.REVIEWER: [
        (("review", "quality", "audit", "inspect", "lint", "code review"), 3),
        (("issue", "problem", "vulnerability", "smell", "concern", "feedback"), 1),
    ],
    AgentRole.OPTIMIZER: [
        (("optimize", "refactor", "performance", "simplify", "reduce", "improve efficiency"), 3),
        (("clean", "improve", "deduplicate", "consolidate", "streamline"), 1),
    ],
    AgentRole.PLANNER: [
        (("plan", "decompose", "design", "architect", "breakdown", "roadmap"), 3),
        (("strategy", "organize", "prioritize", "estimate", "scope", "divide"), 1),
    ],
}

MIN_ROLE_SCORE = 2


def score_task_for_role(description: str, patterns: list[tuple[tuple[str, ...], int]]) -> int:
    desc = description.lower()
    return sum(weight for keywords, weight in patterns for keyword in keywords if keyword in desc)


def select_role_for_task(description: str) -> AgentRole:
    """Pick the best-scoring role for a task; weak matches fall back to coder."""
    best_role = AgentRole.CODER
    best_score = 0
    for role, patterns in ROLE_PATTERNS.items():
        score = score_task_for_role(description, patterns)
        if score > best_score:
            best_role, best_score = role, score
    if best_score < MIN_ROLE_SCORE:
        return AgentRole.CODER
    return best_role


def get_agent_for_task(
    description: str,
    definitions: dict[AgentRole, AgentDefinition] | None = None,
) -> AgentDefinition:
    role = select_role_for_task(description)
    definition = (definitions or AGENT_ROLES).get(role) or AGENT_ROLES[AgentRole.CODER]
    return replace(definition, max_turns=DEFAULT_MAX_TURNS.get(role, 20))


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


@dataclass
class AgentTask:
    id: str
    description: str
    context: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)


@dataclass
class AgentResult:
    output: str
    success: bool
    turns: int = 0
    tools_used: list[str] = field(default_factory=list)
    tokens_used: int = 0
    duration: float = 0.0
    aborted: bool = False
    # The exception that ended the run, kept for recovery classification.
    error: BaseException | None = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "output": self.output,
            "success": self.success,
            "turns": self.turns,
            "tools_used": list(self.tools_used),
            "tokens_used": self.tokens_used,
            "duration": self.duration,
            "aborted": self.aborted,
        }


def build_task_prompt(task: AgentTask) -> str:
    prompt = f"Task: {task.description}\n"
    if task.context:
        prompt += f"\nContext:\n{json.dumps(task.context, indent=2, default=str)}\n"
    prompt += (
        "\nComplete this task autonomously using the available tools. "
        "When done, provide a summary of what you accomplished."
    )
    return prompt


class AgentExecutor:
    """Runs a single agent turn loop in an isolated session.

    Sub-agents run unattended, so tool confirmation is skipped for them.
    """

    def __init__(
        self,
        provider: LLMProvider,
        tool_registry: ToolRegistry,
        project_path: str = "",
    ):
        self.provider = provider
        self.tool_registry = tool_registry
        self.project_path = project_path

    async def execute(
        self,
        definition: AgentDefinition,
        task: AgentTask,
        abort_event: asyncio.Event | None = None,
    ) -> AgentResult:
        started = time.monotonic()
        session = new_session(
            name=f"agent-{definition.role.value}-{task.id}",
            project_path=self.project_path,
            task_id=task.id,
            role=definition.role.value,
        )
        policy = ToolPolicy(allow=list(definition.allowed_tools)) if definition.allowed_tools else None
        options = TurnOptions(
            abort_event=abort_event,
            skip_confirmation=True,
            max_tool_iterations=definition.max_turns,
            system_prompt=definition.system_prompt,
            tool_policy=policy,
            tool_context=ToolContext(
                session_id=session.id,
                project_path=self.project_path,
                agent_id=session.name,
            ),
        )

        log.info("Agent started", role=definition.role.value, task_id=task.id, max_turns=definition.max_turns)
        try:
            turn = await execute_turn(session, build_task_prompt(task), self.provider, self.tool_registry, options)
        except Exception as e:
            log.error("Agent failed", role=definition.role.value, task_id=task.id, error=str(e))
            return AgentResult(
                output=f"Agent error: {e}",
                success=False,
                duration=time.monotonic() - started,
                error=e,
            )

        tools_used = list(dict.fromkeys(call.name for call in turn.tool_calls))
        success = not turn.aborted and turn.converged
        if turn.aborted:
            output = turn.partial_content or ""
        elif not turn.converged:
            output = MAX_TURNS_EXHAUSTED
        else:
            output = turn.content
        result = AgentResult(
            output=output,
            success=success,
            turns=turn.iterations,
            tools_used=tools_used,
            tokens_used=turn.usage.total_tokens,
            duration=time.monotonic() - started,
            aborted=turn.aborted,
        )
        log.info(
            "Agent finished",
            role=definition.role.value,
            task_id=task.id,
            success=success,
            turns=result.turns,
            tools=tools_used,
        )
        return result
