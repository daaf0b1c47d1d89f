"""SQL literal helpers for queries sent through ``run_sql``.

Hasura's run_sql has no bind parameters, so values are rendered as literals.
"""

from __future__ import annotations

import re
from collections.abc import Collection
from typing import Any

_IDENT_RE = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")

# run_sql renders SQL NULL as this string.
_NULL = "NULL"


def sql_str(value: str) -> str:
    escaped = (value or "").replace("'", "''")
    return f"'{escaped}'"


def sql_bool(value: bool) -> str:
    return "true" if value else "false"


def sql_ident(name: str) -> str:
    """Lower-case and validate a schema or table name."""
    ident = (name or "").strip().lower()
    if _IDENT_RE.fullmatch(ident) is None:
        raise ValueError(f"invalid SQL identifier: {name!r}")
    return ident


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"t", "true", "1"}


def tuples_to_dicts(
    res: dict[str, Any], *, nullable: Collection[str] = ()
) -> list[dict[str, Any]]:
    """Turn a ``TuplesOk`` result (header row + value rows) into dicts.

    Only columns listed in ``nullable`` decode the string "NULL" to ``None``;
    in NOT NULL columns it is ordinary data.
    """
    table = res.get("result")
    if not isinstance(table, list) or not table or not isinstance(table[0], list):
        return []
    columns = table[0]
    return [
        {
            col: (None if val == _NULL and col in nullable else val)
            for col, val in zip(columns, row)
            if isinstance(col, str)
        }
        for row in table[1:]
        if isinstance(row, list)
    ]
