"""
Textual safety gate for SQL sent to a user's live database.

This is deliberately not a parser: a denylisted keyword anywhere in the
statement, string literals and comments included, rejects it. Queries such as
``SELECT * FROM t WHERE name = 'update'`` are refused; that over-rejection is
accepted, under-rejection is not.
"""

import re

DENIED_KEYWORDS = (
    "DROP", "DELETE", "INSERT", "UPDATE", "ALTER", "CREATE",
    "TRUNCATE", "GRANT", "REVOKE", "EXEC", "EXECUTE",
)

_STARTS_WITH_SELECT = re.compile(r"^SELECT\b", re.IGNORECASE)
_DENIED = re.compile(r"\b(?:" + "|".join(DENIED_KEYWORDS) + r")\b", re.IGNORECASE)


def find_denied_keyword(sql: str):
    """Return the first denylisted keyword found in ``sql`` (uppercased), or None."""
    match = _DENIED.search(sql)
    return match.group(0).upper() if match else None


def is_safe(sql) -> bool:
    """True only for a statement that starts with SELECT and contains no denylisted keyword."""
    if not isinstance(sql, str):
        return False
    stripped = sql.strip()
    if not _STARTS_WITH_SELECT.match(stripped):
        return False
    return find_denied_keyword(stripped) is None
