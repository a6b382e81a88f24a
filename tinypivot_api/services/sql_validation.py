"""
SQL Safety Validation

Static text checks that gate every ad-hoc query before it reaches a
warehouse. This is not a SQL parser: anything ambiguous is rejected.

Rules:
- Only SELECT, or WITH ... SELECT, statements
- No mutating or privilege keywords, file side channels, or stacked statements
- No comments
- Every table named after FROM or JOIN must be whitelisted. CTE names are
  accepted in the main query and in later CTE bodies, never in their own
  (non-recursive) body, so a CTE cannot shadow a forbidden table.

Also provides the LIMIT/OFFSET rewriting helpers used by the registry.
"""

import re
from dataclasses import dataclass

FORBIDDEN_KEYWORDS = (
    "INSERT",
    "UPDATE",
    "DELETE",
    "DROP",
    "ALTER",
    "TRUNCATE",
    "CREATE",
    "GRANT",
    "REVOKE",
    "EXEC",
    "EXECUTE",
    "MERGE",
    "UPSERT",
    "REPLACE",
    "CALL",
    "SET",
    "LOCK",
    "UNLOCK",
)

_FORBIDDEN_RE = {
    keyword: re.compile(rf"\b{keyword}\b", re.IGNORECASE) for keyword in FORBIDDEN_KEYWORDS
}

_DANGEROUS_PATTERNS = (
    re.compile(r"\bINTO\s+(?:OUTFILE|DUMPFILE)\b", re.IGNORECASE),
    re.compile(r"\bLOAD\s+DATA\b", re.IGNORECASE),
    re.compile(r";\s*(?:INSERT|UPDATE|DELETE|DROP)\b", re.IGNORECASE),
)

_IDENT = r'(?:"[^"]+"|`[^`]+`|[A-Za-z_][\w$]*)'
_QUALIFIED = rf"{_IDENT}(?:\s*\.\s*{_IDENT}){{0,2}}"

_FROM_KEYWORD_RE = re.compile(r"\bFROM\s+", re.IGNORECASE)

# FROM list runs until the next clause keyword or closing paren
_FROM_LIST_RE = re.compile(
    r"(.+?)(?=\b(?:WHERE|GROUP|ORDER|HAVING|LIMIT|OFFSET|UNION|INTERSECT|EXCEPT|FROM|SELECT"
    r"|WINDOW|QUALIFY|FETCH|JOIN|INNER|LEFT|RIGHT|FULL|CROSS|NATURAL|ON|USING)\b|\)|;|$)",
    re.IGNORECASE | re.DOTALL,
)

# Functions whose argument syntax uses FROM without naming a table
_FROM_ARGUMENT_FUNCTIONS = {"EXTRACT", "SUBSTRING", "SUBSTR", "TRIM", "POSITION", "OVERLAY"}
_TRAILING_IDENT_RE = re.compile(r"([A-Za-z_]\w*)\s*$")
_JOIN_KEYWORD_RE = re.compile(r"\bJOIN\b", re.IGNORECASE)
_LATERAL_RE = re.compile(r"LATERAL\b", re.IGNORECASE)
# A top-level comma after a join condition starts another FROM item
_JOIN_CONDITION_RE = re.compile(r"\b(?:ON|USING)\b", re.IGNORECASE)
_LEADING_TABLE_RE = re.compile(rf"^\s*({_QUALIFIED})")

_CTE_HEAD_RE = re.compile(
    rf"\s*({_IDENT})\s*(?:\([^()]*\)\s*)?AS\s*(?:NOT\s+)?(?:MATERIALIZED\s+)?\(",
    re.IGNORECASE,
)
_WITH_RE = re.compile(r"^\s*WITH\s+(RECURSIVE\s+)?", re.IGNORECASE)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validate_sql."""
    valid: bool
    error: str | None = None


@dataclass(frozen=True)
class CommonTableExpression:
    """A CTE declared in a WITH clause."""
    name: str
    body: str


def normalize_table_name(name: str) -> str:
    """Strip quoting and whitespace around dots, lowercase."""
    parts = [part.strip().strip('"`') for part in name.split(".")]
    return ".".join(parts).lower()


def _from_item_name(fragment: str) -> str | None:
    """
    Name the FROM or JOIN item at the start of fragment.

    Parenthesised subqueries give None, their own FROMs are visited
    separately. A table function gives the function name and anything that
    is not an identifier gives its first token, so neither matches a
    whitelist of real tables.
    """
    stripped = fragment.strip()
    lateral = _LATERAL_RE.match(stripped)
    if lateral:
        stripped = stripped[lateral.end():].lstrip()
    if not stripped or stripped.startswith("("):
        return None
    match = _LEADING_TABLE_RE.match(stripped)
    if not match:
        return stripped.split()[0].lower()
    return normalize_table_name(match.group(1))


def extract_table_names(sql: str) -> list[str]:
    """
    Extract table names referenced after FROM and JOIN.

    Handles comma-separated FROM lists, aliases and schema-qualified names.
    Subqueries are skipped (their contents are scanned on their own because
    every FROM in the text is visited). Table functions such as
    TABLE('X') or pg_read_file(...) are reported by function name, and
    items that are not identifiers (stages, variables) by their raw token.

    Returns:
        Normalized (lowercase, unquoted) names in first-seen order
    """
    tables: list[str] = []

    def collect(fragments: list[str]) -> None:
        for fragment in fragments:
            name = _from_item_name(fragment)
            if name:
                tables.append(name)

    for keyword in _FROM_KEYWORD_RE.finditer(sql):
        if _is_function_argument(sql, keyword.start()):
            continue
        match = _FROM_LIST_RE.match(sql, keyword.end())
        if match:
            collect(_split_top_level(match.group(1)))

    for keyword in _JOIN_CONDITION_RE.finditer(sql):
        start = keyword.end()
        if keyword.group(0).upper() == "USING":
            open_index = sql.find("(", start)
            close_index = _matching_paren(sql, open_index) if open_index != -1 else -1
            if close_index == -1:
                continue
            start = close_index + 1
        match = _FROM_LIST_RE.match(sql, start)
        if match:
            # The first fragment is the condition itself
            collect(_split_top_level(match.group(1))[1:])

    for keyword in _JOIN_KEYWORD_RE.finditer(sql):
        name = _from_item_name(sql[keyword.end():])
        if name:
            tables.append(name)

    return list(dict.fromkeys(tables))


def _is_function_argument(sql: str, index: int) -> bool:
    """True when the FROM at index sits directly inside EXTRACT(...), TRIM(...) and similar."""
    depth = 0
    for position in range(index - 1, -1, -1):
        char = sql[position]
        if char == ")":
            depth += 1
        elif char == "(":
            if depth == 0:
                name = _TRAILING_IDENT_RE.search(sql[:position])
                return bool(name) and name.group(1).upper() in _FROM_ARGUMENT_FUNCTIONS
            depth -= 1
    return False


def _split_top_level(fragment: str) -> list[str]:
    """Split on commas that are not nested inside parentheses."""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for char in fragment:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if char == "," and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
    parts.append("".join(current))
    return parts


def _matching_paren(sql: str, open_index: int) -> int:
    """Index of the paren closing the one at open_index, skipping quoted text. -1 if unbalanced."""
    depth = 0
    quote: str | None = None
    for index in range(open_index, len(sql)):
        char = sql[index]
        if quote:
            if char == quote:
                quote = None
            continue
        if char in ("'", '"'):
            quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0:
                return index
    return -1


def parse_with_clause(sql: str) -> tuple[list[CommonTableExpression], str, bool] | None:
    """
    Split a WITH query into its CTEs and the main statement.

    Returns:
        (ctes, main_query, recursive) or None if the clause cannot be parsed
    """
    head = _WITH_RE.match(sql)
    if not head:
        return None

    recursive = bool(head.group(1))
    position = head.end()
    ctes: list[CommonTableExpression] = []

    while True:
        match = _CTE_HEAD_RE.match(sql, position)
        if not match:
            return None
        open_index = match.end() - 1
        close_index = _matching_paren(sql, open_index)
        if close_index == -1:
            return None
        ctes.append(CommonTableExpression(
            name=normalize_table_name(match.group(1)),
            body=sql[open_index + 1:close_index],
        ))
        position = close_index + 1
        rest = sql[position:].lstrip()
        if rest.startswith(","):
            position = sql.index(",", position) + 1
            continue
        return ctes, rest, recursive


def extract_cte_names(sql: str) -> list[str]:
    """Names declared in a leading WITH clause (empty when there is none)."""
    parsed = parse_with_clause(sql)
    if not parsed:
        return []
    return [cte.name for cte in parsed[0]]


def _check_tables(sql: str, allowed: set[str]) -> str | None:
    for table in extract_table_names(sql):
        if table not in allowed:
            return f'Table "{table}" is not in the allowed list'
    return None


def validate_sql(sql: str, allowed_tables: list[str]) -> ValidationResult:
    """
    Validate that a query is a single read-only statement over whitelisted tables.

    Args:
        sql: Query text
        allowed_tables: Tables the caller may read (case-insensitive)

    Returns:
        ValidationResult with an error message when rejected
    """
    if not sql or not sql.strip():
        return ValidationResult(False, "SQL query is required")

    trimmed = sql.strip()
    upper = trimmed.upper()

    if not (upper.startswith("SELECT") or upper.startswith("WITH")):
        return ValidationResult(False, "Only SELECT queries are allowed")

    if upper.startswith("WITH") and not re.search(r"\bSELECT\b", upper):
        return ValidationResult(False, "WITH clause must contain a SELECT statement")

    for keyword, pattern in _FORBIDDEN_RE.items():
        if pattern.search(trimmed):
            return ValidationResult(False, f"Forbidden keyword detected: {keyword}")

    for pattern in _DANGEROUS_PATTERNS:
        if pattern.search(trimmed):
            return ValidationResult(False, "Potentially dangerous SQL pattern detected")

    statements = [part for part in trimmed.split(";") if part.strip()]
    if len(statements) > 1:
        return ValidationResult(False, "Multiple statements are not allowed")

    if "--" in trimmed or "/*" in trimmed:
        return ValidationResult(False, "SQL comments are not allowed")

    allowed = {normalize_table_name(table) for table in allowed_tables}

    if upper.startswith("WITH"):
        parsed = parse_with_clause(trimmed)
        if parsed is None:
            return ValidationResult(False, "Unable to parse WITH clause")
        ctes, main_query, recursive = parsed
        cte_names = [cte.name for cte in ctes]

        for index, cte in enumerate(ctes):
            visible = set(cte_names) if recursive else set(cte_names[:index])
            error = _check_tables(cte.body, allowed | visible)
            if error:
                return ValidationResult(False, error)

        error = _check_tables(main_query, allowed | set(cte_names))
    else:
        error = _check_tables(trimmed, allowed)

    if error:
        return ValidationResult(False, error)

    return ValidationResult(True)


# =============================================================================
# Query rewriting
# =============================================================================

# LIMIT/OFFSET window closing the outermost query. A window inside a
# subquery is followed by ")" and never matches.
_WINDOW_TAIL_RE = re.compile(r"(?:\b(?:LIMIT|OFFSET)\s+\d+\s*)+$", re.IGNORECASE)
_LIMIT_RE = re.compile(r"\bLIMIT\s+(\d+)", re.IGNORECASE)
_OFFSET_RE = re.compile(r"\bOFFSET\s+(\d+)", re.IGNORECASE)
_TRAILING_SEMICOLON_RE = re.compile(r";\s*$")


def sanitize_table_name(name: str) -> str:
    """Keep only word characters."""
    return re.sub(r"\W", "", name)


def _split_window(sql: str) -> tuple[str, int | None, int | None]:
    """Split off the outermost LIMIT/OFFSET. Returns (query, limit, offset)."""
    trimmed = _TRAILING_SEMICOLON_RE.sub("", sql).strip()
    tail = _WINDOW_TAIL_RE.search(trimmed)
    if not tail:
        return trimmed, None, None
    limit = _LIMIT_RE.search(tail.group(0))
    offset = _OFFSET_RE.search(tail.group(0))
    return (
        trimmed[:tail.start()].rstrip(),
        int(limit.group(1)) if limit else None,
        int(offset.group(1)) if offset else None,
    )


def ensure_limit(sql: str, max_rows: int) -> str:
    """
    Cap a query at max_rows.

    Only the outermost LIMIT counts: a larger one is lowered, a smaller one
    is kept, and without one a LIMIT is appended. Subquery limits are left
    untouched.
    """
    query, limit, offset = _split_window(sql)
    capped = max_rows if limit is None else min(limit, max_rows)
    query = f"{query} LIMIT {capped}"
    if offset is not None:
        query = f"{query} OFFSET {offset}"
    return query


def build_paginated_query(sql: str, offset: int, limit: int) -> str:
    """
    Replace the outermost LIMIT/OFFSET with a page window.

    Fetches limit + 1 rows so the caller can tell whether more rows exist.
    """
    query, _, _ = _split_window(sql)
    return f"{query} LIMIT {limit + 1} OFFSET {offset}"
