import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import structlog
from langchain_core.messages import AIMessage

from services.usage_tracker import LlmCallSpan, build_llm_span, utc_now
from sql_guard.errors import QueryAbortedError

logger = structlog.get_logger()


class NodeInterrupted(Exception):
    """
    Raised by a node that fails part-way through. Carries the partial state
    update gathered so far (spans, db time) so the turn's usage record stays
    complete; `error` is the exception that stopped the node.
    """

    def __init__(self, error: BaseException, update: Dict[str, Any]):
        super().__init__(str(error))
        self.error = error
        self.update = update


class BaseNode:
    node_name = "node"

    def __init__(self, llm, model_name: Optional[str] = None):
        self.llm = llm
        self.model_name = model_name

    @staticmethod
    def check_abort(signal: Optional[asyncio.Event]) -> None:
        if signal is not None and signal.is_set():
            raise QueryAbortedError("Turn aborted by caller")

    def _span(self, raw: Any, started_at: datetime) -> LlmCallSpan:
        return build_llm_span(self.node_name, self.model_name, raw, started_at, utc_now())

    async def _call_llm(
        self,
        messages: List[Any],
        structured_model: Optional[Any] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Tuple[Any, AIMessage, LlmCallSpan, Optional[BaseException]]:
        """
        One timed model call. Returns (result, raw message, span, parsing error).

        With `structured_model` the result is the parsed object (or None when the
        output did not match); otherwise it is the raw AIMessage. API failures
        are not caught here.
        """
        started_at = utc_now()
        parsing_error = None
        try:
            if structured_model is not None:
                # include_raw=True keeps usage metadata and turns parse failures into data
                llm_to_call = self.llm.with_structured_output(structured_model, include_raw=True)
                result = await llm_to_call.ainvoke(messages)
                raw_response = result["raw"]
                response_obj = result.get("parsed")
                parsing_error = result.get("parsing_error")
            else:
                llm_to_call = self.llm.bind_tools(tools) if tools else self.llm
                raw_response = await llm_to_call.ainvoke(messages)
                response_obj = raw_response
        except Exception as e:
            logger.error(f"LLM call failed for {self.node_name}", error=str(e), error_type=type(e).__name__)
            raise

        span = self._span(raw_response, started_at)
        logger.info(
            f"LLM call completed for {self.node_name}",
            duration_ms=span.duration_ms,
            tokens=span.total_tokens or 0,
            cost_usd=span.cost_usd,
        )
        return response_obj, raw_response, span, parsing_error
