"""SQL safety gate. Decides whether a candidate SQL string may ever reach a live connection.

Pipeline per candidate (terminal states: valid / rejected):
  1. empty check
  2. blocked-keyword substring scan on raw text (before parsing; catches payloads in comments), every hit reported
  3. structural parse (sqlglot): exactly one SELECT, authoritative accept/reject
  4. LIMIT presence (warning only)
  5. join complexity (warning only)
  6. function whitelist: regex over masked text + AST anonymous calls (violations, all collected).
     CAST and cast type names (`::numeric(10, 2)`, `AS varchar(20)`) are syntax, not calls
  7. heuristic security scan (warnings only)
  8. safety score, 9. advisory cost estimate

is_valid == no violations. is_safe(result) is the execution gate.
"""

import logging
import re
from dataclasses import dataclass, field

import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError

from apps.nl2sql.config import Settings, get_settings
from apps.nl2sql.schemas.responses import SQLValidationResult
from apps.nl2sql.services.errors import SQLGateError, SQLRejectedError

logger = logging.getLogger(__name__)

BLOCKED_KEYWORDS: tuple[str, ...] = (
    # DML
    "INSERT", "UPDATE", "DELETE", "MERGE", "UPSERT",
    # DDL
    "CREATE", "ALTER", "DROP", "TRUNCATE", "RENAME",
    # DCL
    "GRANT", "REVOKE",
    # transaction control
    "COMMIT", "ROLLBACK", "SAVEPOINT",
    # admin / exec
    "EXEC", "EXECUTE", "CALL", "LOAD", "COPY", "SHOW", "DESCRIBE", "EXPLAIN", "ANALYZE",
    # file ops
    "INTO OUTFILE", "LOAD DATA", "SELECT INTO",
)

ALLOWED_FUNCTIONS: frozenset[str] = frozenset(
    {
        "COUNT", "SUM", "AVG", "MIN", "MAX",
        "UPPER", "LOWER", "TRIM", "LENGTH", "SUBSTRING", "CONCAT",
        "DATE", "YEAR", "MONTH", "DAY", "DATE_TRUNC", "DATE_ADD", "DATE_SUB", "EXTRACT",
        "NOW", "CURRENT_DATE", "CURRENT_TIMESTAMP",
        "ROUND", "CEIL", "FLOOR", "ABS", "COALESCE", "NULLIF",
        "CASE", "IF", "IFNULL",
    }
)

SUSPICIOUS_PATTERNS: tuple[str, ...] = (
    "--", "/*", "*/", ";", "UNION", "OR 1=1", "AND 1=1",
    "INSERT", "UPDATE", "DELETE", "MERGE", "DROP",
)

# Keywords that may legally precede "(" without being a function call.
NON_FUNCTION_KEYWORDS: frozenset[str] = frozenset(
    {
        "ALL", "AND", "ANY", "AS", "BETWEEN", "BY", "CAST", "DISTINCT", "ELSE", "EXISTS", "FILTER",
        "FROM", "GROUP", "HAVING", "IN", "INTERVAL", "IS", "JOIN", "LATERAL", "LIKE", "ILIKE",
        "NOT", "ON", "OR", "OVER", "SAFE_CAST", "SELECT", "SOME", "THEN", "TRY_CAST", "UNION", "USING",
        "VALUES", "WHEN", "WHERE", "WITH", "WITHIN",
    }
)

_FUNCTION_CALL_RE = re.compile(r"\b([A-Za-z_][A-Za-z0-9_]*)\s*\(")
_MASK_RE = re.compile(r"'(?:[^']|'')*'|--[^\n]*|/\*.*?\*/", re.DOTALL)

MSG_EMPTY = "Empty SQL query"
MSG_NOT_SELECT = "Only SELECT statements are allowed"
MSG_MULTI = "Multiple statements are not allowed"
MSG_SELECT_INTO = "SELECT INTO is not allowed"
MSG_NO_LIMIT = "Query should include LIMIT clause for performance"


@dataclass(frozen=True)
class GateConfig:
    """Immutable gate configuration. Vary in tests with dataclasses.replace()."""

    blocked_keywords: tuple[str, ...] = BLOCKED_KEYWORDS
    allowed_functions: frozenset[str] = ALLOWED_FUNCTIONS
    suspicious_patterns: tuple[str, ...] = SUSPICIOUS_PATTERNS
    max_join_tables: int = 5
    max_row_limit: int = 10000
    safety_threshold: float = 0.7
    dialect: str = "postgres"
    violation_penalty: float = 0.3
    warning_penalty: float = 0.1
    read_only_bonus: float = 0.2
    limit_bonus: float = 0.1

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "GateConfig":
        s = settings or get_settings()
        return cls(
            max_join_tables=s.MAX_JOIN_TABLES,
            max_row_limit=s.MAX_ROW_LIMIT,
            safety_threshold=s.SAFETY_THRESHOLD,
            dialect=s.SQL_DIALECT,
        )


@dataclass
class GateDecision:
    """Structured result plus human-readable error (None when valid)."""

    result: SQLValidationResult
    error: str | None = None

    @property
    def rejected(self) -> bool:
        return not self.result.is_valid


@dataclass(frozen=True)
class ApprovedSQL:
    """SQL that passed the execution gate. The only input the execution dispatcher accepts."""

    sql: str
    validation: SQLValidationResult = field(compare=False)


@dataclass
class _Structure:
    tables: int = 0
    has_limit: bool = False
    has_where: bool = False
    has_group_by: bool = False
    has_order_by: bool = False


def mask_literals_and_comments(sql: str) -> str:
    """Blank out string literals and comments, preserving offsets."""
    return _MASK_RE.sub(lambda m: " " * len(m.group(0)), sql)


def _is_type_name(masked: str, pos: int) -> bool:
    """True when the word at pos is a parameterized type in a cast (`x::numeric(10, 2)`, `AS varchar(20)`)."""
    prefix = masked[:pos].rstrip().upper()
    if prefix.endswith("::"):
        return True
    return prefix.endswith("AS") and (len(prefix) == 2 or not (prefix[-3].isalnum() or prefix[-3] == "_"))


def _from_clause(select: exp.Select) -> exp.Expression | None:
    # arg key is "from" in older sqlglot releases, "from_" in newer ones
    return select.args.get("from") or select.args.get("from_")


def _table_key(table: exp.Table) -> str:
    return ".".join(p for p in (table.catalog, table.db, table.name) if p).lower()


def referenced_tables(select: exp.Select) -> set[str]:
    """Distinct tables referenced by the FROM clause and JOINs, including derived tables."""
    sources: list[exp.Expression] = []
    from_ = _from_clause(select)
    if from_ is not None:
        if from_.this is not None:
            sources.append(from_.this)
        sources.extend(from_.expressions or [])
    for join in select.args.get("joins") or []:
        if join.this is not None:
            sources.append(join.this)

    names: set[str] = set()
    for src in sources:
        if isinstance(src, exp.Table):
            names.add(_table_key(src))
        else:
            names.update(_table_key(t) for t in src.find_all(exp.Table))
    names.discard("")
    return names


def is_query_safe(result: SQLValidationResult, threshold: float = 0.7) -> bool:
    """Execution gate: valid, read-only, and scored at or above threshold."""
    return bool(result.is_valid and result.is_read_only and result.safety_score >= threshold)


class SQLSafetyGate:
    """Parser-driven validator. Config injected at construction; no package-level mutable state."""

    def __init__(self, config: GateConfig | None = None) -> None:
        self.config = config or GateConfig()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, sql: str | None) -> GateDecision:
        result = SQLValidationResult()
        text = (sql or "").strip()

        if not text:
            return self._reject(result, [MSG_EMPTY])

        keywords = self._find_blocked_keywords(text)
        if keywords:
            return self._reject(result, [f"Blocked keyword detected: {kw}" for kw in keywords])

        stmt, parse_error = self._parse(text)
        if stmt is None:
            return self._reject(result, [parse_error or MSG_NOT_SELECT])

        result.is_read_only = True
        structure = self._analyze(stmt)
        result.has_limit = structure.has_limit

        violations: list[str] = []
        warnings: list[str] = []

        if not structure.has_limit:
            warnings.append(MSG_NO_LIMIT)
        if structure.tables > self.config.max_join_tables:
            warnings.append(f"Query joins too many tables ({structure.tables} > {self.config.max_join_tables})")

        for name in self._unauthorized_functions(text, stmt):
            violations.append(f"Unauthorized function: {name}")

        upper = text.upper()
        for pattern in self.config.suspicious_patterns:
            if pattern.upper() in upper:
                warnings.append(f"Potentially suspicious pattern detected: {pattern}")

        result.violations = violations
        result.warnings = warnings
        result.is_valid = not violations
        result.safety_score = self._safety_score(result)
        result.estimated_cost = self._estimate_cost(structure)

        if violations:
            return self._reject(result, violations)
        return GateDecision(result=result)

    def is_safe(self, result: SQLValidationResult) -> bool:
        return is_query_safe(result, self.config.safety_threshold)

    def _reject(self, result: SQLValidationResult, violations: list[str]) -> GateDecision:
        result.violations = list(violations)
        result.is_valid = False
        error = "; ".join(violations)
        logger.warning("SQL rejected by safety gate: %s", error)
        return GateDecision(result=result, error=error)

    def _find_blocked_keywords(self, text: str) -> list[str]:
        """Every deny-listed substring present, named with the enclosing word when part of a longer identifier."""
        upper = text.upper()
        found: list[str] = []
        for kw in self.config.blocked_keywords:
            pos = upper.find(kw.upper())
            if pos < 0:
                continue
            start, end = pos, pos + len(kw)
            while start > 0 and (upper[start - 1].isalnum() or upper[start - 1] == "_"):
                start -= 1
            while end < len(upper) and (upper[end].isalnum() or upper[end] == "_"):
                end += 1
            word = upper[start:end]
            found.append(kw if word == kw.upper() else f"{kw} (in {word})")
        return found

    def _parse(self, text: str) -> tuple[exp.Select | None, str | None]:
        """Return (select, None) or (None, violation message)."""
        try:
            statements = [s for s in sqlglot.parse(text, read=self.config.dialect) if s is not None]
        except SqlglotError as e:
            return None, f"SQL parsing error: {e}"
        if not statements:
            return None, MSG_EMPTY
        if len(statements) > 1:
            return None, MSG_MULTI
        stmt = statements[0]
        if not isinstance(stmt, exp.Select):
            return None, MSG_NOT_SELECT
        if stmt.args.get("into") is not None:
            return None, MSG_SELECT_INTO
        return stmt, None

    def _analyze(self, stmt: exp.Select) -> _Structure:
        return _Structure(
            tables=len(referenced_tables(stmt)),
            has_limit=stmt.args.get("limit") is not None or stmt.args.get("fetch") is not None,
            has_where=stmt.args.get("where") is not None,
            has_group_by=stmt.args.get("group") is not None,
            has_order_by=stmt.args.get("order") is not None,
        )

    def _unauthorized_functions(self, text: str, stmt: exp.Select) -> list[str]:
        """Distinct disallowed function names, in order of first appearance."""
        allowed = {f.upper() for f in self.config.allowed_functions}
        found: list[str] = []

        masked = mask_literals_and_comments(text)
        for m in _FUNCTION_CALL_RE.finditer(masked):
            name = m.group(1).upper()
            if name in NON_FUNCTION_KEYWORDS or name in allowed or name in found:
                continue
            if _is_type_name(masked, m.start()):
                continue
            found.append(name)

        for call in stmt.find_all(exp.Anonymous):
            name = str(call.name or "").upper()
            if name and name not in allowed and name not in found:
                found.append(name)
        return found

    def _safety_score(self, result: SQLValidationResult) -> float:
        cfg = self.config
        score = 1.0
        score -= cfg.violation_penalty * len(result.violations)
        score -= cfg.warning_penalty * len(result.warnings)
        if result.is_read_only:
            score += cfg.read_only_bonus
        if result.has_limit:
            score += cfg.limit_bonus
        return round(min(1.0, max(0.0, score)), 4)

    @staticmethod
    def _estimate_cost(s: _Structure) -> float:
        """Advisory relative cost; not a planner estimate."""
        cost = 0.01 + 0.005 * s.tables
        if s.tables > 1:
            cost += 0.01 * (s.tables - 1)
        if s.has_where:
            cost += 0.005
        if s.has_group_by:
            cost += 0.01
        if s.has_order_by:
            cost += 0.005
        return round(cost, 6)

    # ------------------------------------------------------------------
    # Limit enforcement and approval
    # ------------------------------------------------------------------

    def clamp_limit(self, limit: int | None) -> int:
        """Clamp to (0, max_row_limit]; invalid values become max_row_limit."""
        max_limit = self.config.max_row_limit
        if limit is None or limit <= 0 or limit > max_limit:
            return max_limit
        return int(limit)

    def enforce_limit(self, sql: str, limit: int | None) -> str:
        """Return sql with its LIMIT set to the clamped limit (overwriting any existing one). Idempotent."""
        n = self.clamp_limit(limit)
        stmt, error = self._parse((sql or "").strip())
        if stmt is None:
            raise SQLGateError(error or MSG_NOT_SELECT)
        return stmt.limit(n, copy=True).sql(dialect=self.config.dialect)

    def enforce_limit_and_validate(self, sql: str, limit: int | None) -> tuple[str, GateDecision]:
        """Enforce LIMIT then re-run the full validation on the rewritten statement."""
        limited = self.enforce_limit(sql, limit)
        return limited, self.validate(limited)

    def approve(self, sql: str) -> ApprovedSQL:
        """Validate and wrap for execution. Raises SQLRejectedError unless is_safe."""
        decision = self.validate(sql)
        if not self.is_safe(decision.result):
            reason = decision.error or (
                f"safety score {decision.result.safety_score} below threshold {self.config.safety_threshold}"
            )
            raise SQLRejectedError(f"SQL not approved for execution: {reason}", result=decision.result)
        return ApprovedSQL(sql=sql.strip(), validation=decision.result)


def get_sql_gate(settings: Settings | None = None) -> SQLSafetyGate:
    """Gate configured from environment settings."""
    return SQLSafetyGate(GateConfig.from_settings(settings))
