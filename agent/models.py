from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class QueryPlan(BaseModel):
    """Structured plan the planner asks the model for before any SQL runs."""

    model_config = ConfigDict(populate_by_name=True)

    can_answer: bool = Field(
        ...,
        alias="canAnswer",
        description="False when the question is ambiguous or cannot be answered from the data.",
    )
    clarification_needed: Optional[str] = Field(
        None,
        alias="clarificationNeeded",
        description="Question to ask the user when canAnswer is false.",
    )
    tables: List[str] = Field(default_factory=list, description="Tables the query will read.")
    columns: List[str] = Field(default_factory=list, description="Columns the query needs.")
    metrics: List[str] = Field(default_factory=list, description="Aggregations to compute, e.g. SUM(amount).")
    filters: List[str] = Field(default_factory=list, description="WHERE predicates, always including a payment_date range on spend_entries.")
    joins: Optional[List[str]] = Field(None, description="Join conditions between the tables.")
    group_by: Optional[List[str]] = Field(None, alias="groupBy")
    order_by: Optional[str] = Field(None, alias="orderBy")
    limit: Optional[int] = None
    reasoning: str = Field("", description="Short explanation of the query strategy.")


class ExecuteSqlInput(BaseModel):
    """Execute a guarded, read-only SQL query against Postgres and return a small result set."""

    model_config = ConfigDict(populate_by_name=True)

    sql: str = Field(..., min_length=1, description="A single read-only SELECT statement, without a trailing semicolon.")
    reason: Optional[str] = Field(None, description="Why this query is needed to answer the question.")
    max_rows: Optional[int] = Field(None, alias="maxRows", description="Maximum rows to return.")


class ExecuteSqlMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    execution_ms: int = Field(..., alias="executionMs")
    explain_ms: int = Field(..., alias="explainMs")
    explain_summary: Dict[str, Any] = Field(default_factory=dict, alias="explainSummary")


class ExecuteSqlSuccess(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: Literal[True] = True
    columns: List[str]
    rows: List[Dict[str, Any]]
    row_count: int = Field(..., alias="rowCount")
    truncated: bool
    meta: ExecuteSqlMeta

    def to_tool_content(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"ok"})


class ExecuteSqlFailure(BaseModel):
    ok: Literal[False] = False
    kind: Literal["validation", "cost_gate", "execution", "timeout"]
    message: str

    def to_tool_content(self) -> str:
        return self.message


ExecuteSqlOutcome = Union[ExecuteSqlSuccess, ExecuteSqlFailure]


class TokenTotals(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt_tokens: int = Field(0, alias="promptTokens")
    completion_tokens: int = Field(0, alias="completionTokens")
    total_tokens: int = Field(0, alias="totalTokens")


class TurnMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_time_ms: int = Field(..., alias="totalTimeMs")
    llm_time_ms: int = Field(..., alias="llmTimeMs")
    db_time_ms: int = Field(..., alias="dbTimeMs")
    tokens: TokenTotals = Field(default_factory=TokenTotals)
    cost_usd: Optional[float] = Field(None, alias="costUsd")


class TurnResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    text: str
    conversation_id: str = Field(..., alias="conversationId")
    request_id: str = Field(..., alias="requestId")
    metadata: TurnMetadata
    usage_record: Optional[Any] = Field(None, exclude=True)

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
