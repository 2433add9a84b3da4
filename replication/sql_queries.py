"""
SQL Text Helpers
================

Split migration files into executable statements and collect the session
settings they declare with SET lines.
"""

import re
from typing import Any, Dict, List

_SET_STATEMENT = re.compile(r"^SET\s+(?:SESSION\s+)?([A-Za-z_][\w.]*)\s*=\s*(.+)$", re.IGNORECASE | re.DOTALL)


def _split_statements(sql: str) -> List[str]:
    """Split on semicolons outside quotes, dropping comments."""
    statements = []
    current = []
    quote = None
    i = 0
    length = len(sql)

    while i < length:
        char = sql[i]
        nxt = sql[i + 1] if i + 1 < length else ""

        if quote:
            current.append(char)
            if char == quote:
                if nxt == quote:
                    # doubled quote is an escaped quote
                    current.append(nxt)
                    i += 1
                else:
                    quote = None
        elif char in ("'", '"', "`"):
            quote = char
            current.append(char)
        elif char == "-" and nxt == "-":
            end = sql.find("\n", i)
            i = length if end == -1 else end
            continue
        elif char == "/" and nxt == "*":
            end = sql.find("*/", i + 2)
            i = length if end == -1 else end + 2
            current.append(" ")
            continue
        elif char == ";":
            statements.append("".join(current))
            current = []
        else:
            current.append(char)
        i += 1

    statements.append("".join(current))
    return [s.strip() for s in statements if s.strip()]


def _parse_value(raw: str) -> Any:
    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] == "'":
        return value[1:-1].replace("''", "'")
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value


def sql_queries(sql: str) -> List[str]:
    """
    Executable statements of a SQL script, in order, without SET statements.

    Args:
        sql: Script text

    Returns:
        List of statements without trailing semicolons
    """
    return [s for s in _split_statements(sql) if not _SET_STATEMENT.match(s)]


def sql_sets(sql: str) -> Dict[str, Any]:
    """
    Settings declared with `SET name = value` (or `SET SESSION name = value`).

    Later declarations win.
    """
    settings: Dict[str, Any] = {}
    for statement in _split_statements(sql):
        match = _SET_STATEMENT.match(statement)
        if match:
            settings[match.group(1)] = _parse_value(match.group(2))
    return settings
