"""
Schema description handed to the model: DDL-like text rendered from a JSON
schema snapshot (tables -> columns, foreignKeys), restricted to the tables the
execute_sql tool will accept.
"""
import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import structlog

from sql_guard.execute_tool import DEFAULT_ALLOWED_TABLES, allowed_table_names

logger = structlog.get_logger()

DEFAULT_SNAPSHOT_PATH = Path(__file__).parent / "schema_snapshot.json"

SCHEMA_HEADER = """
-- ==================== COMPLETE SCHEMA ====================
-- Use these tables directly. Do NOT query to inspect schema.
-- This is the authoritative schema - no need to discover tables.

-- KEY TABLES:
-- spend_entries: Main payment data (5M+ rows) - REQUIRES payment_date filter
-- buyers: Public sector organisations making payments
-- suppliers: Vendors receiving payments
-- entities: Central registry linking buyers/suppliers to real-world orgs

-- SPEND_ENTRIES WARNING:
-- This table has 5M+ rows. Queries WITHOUT a payment_date filter will be REJECTED.
-- Example: SELECT ... FROM spend_entries WHERE payment_date >= '2024-01-01'
-- Columns: id, buyer_id, supplier_id, amount, payment_date, raw_buyer, raw_supplier, asset_id, source_sheet, source_row_number
""".strip()


def _fallback_schema() -> str:
    return "\n".join([
        "-- Schema file not found.",
        "-- Core tables: spend_entries, buyers, suppliers, entities, nhs_organisations, councils, companies.",
        "-- spend_entries is the large fact table: always filter it by payment_date.",
    ])


def _render_column(col: Dict[str, Any]) -> str:
    definition = f'  "{col["name"]}" {col["type"]}'
    if col.get("primaryKey"):
        definition += " PRIMARY KEY"
    if col.get("notNull"):
        definition += " NOT NULL"
    if col.get("default") is not None:
        definition += f" DEFAULT {col['default']}"
    return definition


def generate_ddl_from_snapshot(snapshot: Dict[str, Any], allowed: Optional[Iterable[str]] = None) -> str:
    allowed_names = set(allowed) if allowed is not None else None
    create_statements: List[str] = []
    fk_lines: List[str] = []

    for table in sorted((snapshot.get("tables") or {}).values(), key=lambda t: t.get("name", "")):
        name = table.get("name")
        if not name or (allowed_names is not None and name not in allowed_names):
            continue

        cols = [_render_column(col) for col in (table.get("columns") or {}).values()]
        create_statements.append(f'CREATE TABLE "{name}" (\n' + ",\n".join(cols) + "\n);")

        for fk in (table.get("foreignKeys") or {}).values():
            if allowed_names is not None and fk.get("tableTo") not in allowed_names:
                continue
            fk_lines.append(
                f"-- {name}.{fk['columnsFrom'][0]} -> {fk['tableTo']}.{fk['columnsTo'][0]}"
            )

    return "\n\n".join([*create_statements, "-- Foreign Key Relationships:\n" + "\n".join(fk_lines)])


def load_database_schema_for_prompt(
    path: Optional[str] = None,
    allowed_tables: Iterable[str] = DEFAULT_ALLOWED_TABLES,
) -> str:
    """Render the schema snapshot for the prompt, or a short fallback if it cannot be read."""
    snapshot_path = Path(path) if path else DEFAULT_SNAPSHOT_PATH
    try:
        snapshot = json.loads(snapshot_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        logger.warning("Schema snapshot not found, using fallback schema", path=str(snapshot_path))
        return _fallback_schema()
    except (OSError, ValueError) as e:
        logger.error("Failed to load schema snapshot", path=str(snapshot_path), error=str(e))
        return _fallback_schema()

    if not isinstance(snapshot, dict) or not isinstance(snapshot.get("tables"), dict):
        logger.error("Schema snapshot has no tables", path=str(snapshot_path))
        return _fallback_schema()

    ddl = generate_ddl_from_snapshot(snapshot, allowed_table_names(allowed_tables))
    return f"{SCHEMA_HEADER}\n\n{ddl}"


@lru_cache(maxsize=4)
def get_schema_context(path: Optional[str] = None) -> str:
    return load_database_schema_for_prompt(path)
