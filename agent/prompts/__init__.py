from agent.prompts.planner import (
    PLANNER_SYSTEM_PROMPT,
    PLANNER_USER_PROMPT
)
from agent.prompts.executor import (
    EXECUTOR_SYSTEM_PROMPT,
    REPAIR_INSTRUCTION,
    FATAL_TOOL_ERROR,
    ITERATION_LIMIT_RESPONSE,
    build_plan_summary
)

__all__ = [
    "PLANNER_SYSTEM_PROMPT",
    "PLANNER_USER_PROMPT",
    "EXECUTOR_SYSTEM_PROMPT",
    "REPAIR_INSTRUCTION",
    "FATAL_TOOL_ERROR",
    "ITERATION_LIMIT_RESPONSE",
    "build_plan_summary"
]
