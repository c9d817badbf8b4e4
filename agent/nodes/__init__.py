from agent.nodes.base import BaseNode, NodeInterrupted
from agent.nodes.planner import PlannerNode, ensure_fact_table_filter, fallback_plan
from agent.nodes.executor import ExecutorNode

__all__ = [
    "BaseNode",
    "NodeInterrupted",
    "PlannerNode",
    "ExecutorNode",
    "ensure_fact_table_filter",
    "fallback_plan",
]
