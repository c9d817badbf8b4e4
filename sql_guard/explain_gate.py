import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

import structlog

from sql_guard.errors import CostGateError

logger = structlog.get_logger()


@dataclass
class ExplainGateOptions:
    max_total_cost: float
    max_plan_rows: float
    # Pragmatic guardrail for the largest table: reject a Seq Scan on it with no Filter.
    reject_unfiltered_fact_table_scan: bool = True
    fact_table: str = "spend_entries"


@dataclass
class ExplainSummary:
    total_cost: Optional[float] = None
    plan_rows: Optional[float] = None
    has_seq_scan_on_fact_table: bool = False
    has_seq_scan_on_fact_table_without_filter: bool = False
    node_types: Set[str] = field(default_factory=set)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalCost": self.total_cost,
            "planRows": self.plan_rows,
            "hasSeqScanOnFactTable": self.has_seq_scan_on_fact_table,
            "hasSeqScanOnFactTableWithoutFilter": self.has_seq_scan_on_fact_table_without_filter,
            "nodeTypes": sorted(self.node_types),
        }


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    return None


def _walk_plan(node: Any, summary: ExplainSummary, fact_table: str) -> None:
    if not isinstance(node, dict):
        return

    node_type = node.get("Node Type")
    if isinstance(node_type, str):
        summary.node_types.add(node_type)

    if node_type == "Seq Scan" and node.get("Relation Name") == fact_table:
        summary.has_seq_scan_on_fact_table = True
        if not node.get("Filter"):
            summary.has_seq_scan_on_fact_table_without_filter = True

    for child in node.get("Plans") or []:
        _walk_plan(child, summary, fact_table)


def summarize_explain_json(explain_json: Any, fact_table: str = "spend_entries") -> ExplainSummary:
    """Summarize the output of EXPLAIN (FORMAT JSON): a list holding one object with a `Plan`."""
    if isinstance(explain_json, (str, bytes)):
        explain_json = json.loads(explain_json)

    root = explain_json[0] if isinstance(explain_json, list) and explain_json else explain_json
    plan = root.get("Plan") if isinstance(root, dict) else None

    summary = ExplainSummary()
    if isinstance(plan, dict):
        summary.total_cost = _number(plan.get("Total Cost"))
        summary.plan_rows = _number(plan.get("Plan Rows"))
        _walk_plan(plan, summary, fact_table)
    return summary


def enforce_explain_gate(summary: ExplainSummary, opts: ExplainGateOptions) -> None:
    if summary.total_cost is not None and summary.total_cost > opts.max_total_cost:
        raise CostGateError(
            f"Query is too expensive (estimated total cost {summary.total_cost} > {opts.max_total_cost})."
        )

    if summary.plan_rows is not None and summary.plan_rows > opts.max_plan_rows:
        raise CostGateError(
            f"Query would scan too many rows (estimated {summary.plan_rows} > {opts.max_plan_rows})."
        )

    if opts.reject_unfiltered_fact_table_scan and summary.has_seq_scan_on_fact_table_without_filter:
        raise CostGateError(
            f"Query would perform a sequential scan on {opts.fact_table} without a filter; "
            "please add a date range and/or buyer filter."
        )

    logger.debug(
        "Explain gate passed",
        total_cost=summary.total_cost,
        plan_rows=summary.plan_rows,
        node_types=sorted(summary.node_types),
    )
