import json
from typing import Any, Dict, List, Optional
import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

logger = structlog.get_logger()

def parse_json_content(content: str) -> Optional[Dict[str, Any]]:
    """Robustly parse JSON from LLM response strings"""
    if not content:
        return None

    # Try direct parse
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        pass

    # Try extracting from code blocks
    try:
        if "```json" in content:
            content = content.split("```json")[1].split("```")[0].strip()
        elif "```" in content:
            content = content.split("```")[1].split("```")[0].strip()

        return json.loads(content)
    except (IndexError, json.JSONDecodeError) as e:
        logger.warning("Failed to parse JSON content", error=str(e), partial_content=content[:100])
        return None

def make_json_serializable(obj: Any) -> Any:
    """Helper to convert objects like UUIDs or datetimes to JSON serializable formats"""
    from uuid import UUID
    from datetime import datetime, date, time, timedelta
    from decimal import Decimal

    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, (datetime, date, time)):
        return obj.isoformat()
    if isinstance(obj, timedelta):
        return obj.total_seconds()
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return bytes(obj).hex()
    if isinstance(obj, dict):
        return {k: make_json_serializable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [make_json_serializable(i) for i in obj]
    return obj

def message_text(message: Optional[BaseMessage]) -> str:
    """Plain text of a message whose content may be a string or a list of content blocks"""
    if message is None:
        return ""
    content = message.content
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict):
                parts.append(block.get("text") or "")
        return "".join(parts)
    return str(content or "")

def latest_human_question(messages: List[BaseMessage]) -> str:
    for message in reversed(messages):
        if isinstance(message, HumanMessage):
            return message_text(message)
    return ""

def final_ai_text(messages: List[BaseMessage]) -> str:
    for message in reversed(messages):
        if isinstance(message, AIMessage):
            return message_text(message)
    return ""

def to_langchain_messages(raw_messages: List[Dict[str, Any]]) -> List[BaseMessage]:
    """Convert {role, content} dicts from the HTTP layer into LangChain messages"""
    converted: List[BaseMessage] = []
    for msg in raw_messages:
        role = (msg.get("role") or "").lower()
        content = msg.get("content") or ""
        if role in ("user", "human"):
            converted.append(HumanMessage(content=content))
        elif role in ("assistant", "ai"):
            converted.append(AIMessage(content=content))
        elif role == "system":
            converted.append(SystemMessage(content=content))
        else:
            logger.warning("Skipping message with unsupported role", role=role)
    return converted
