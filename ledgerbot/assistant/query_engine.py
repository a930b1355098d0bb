"""
QUERY ENGINE - natural language question → tenant-scoped read query → reply

Data Flow:
    question → QueryGenerator → validate_query() → QueryExecutor → ResponseFormatter → answer
                     ↑                                    ↓
            last N conversation turns          run_tenant_query(query, tenant_id)

The generator's output is treated as untrusted: a photographed ledger page
can carry text that steers the model. validate_query() is a conservative
keyword gate, and the executor binds the tenant id as its own parameter
instead of trusting anything written inside the query text.
"""

import logging
import re
from typing import Any, Awaitable, Callable, Dict, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerbot.assistant import prompts
from ledgerbot.assistant.gemini import parse_json_reply
from ledgerbot.core import schemas, storage
from ledgerbot.core.exceptions import (
    GenerationFailed,
    QueryExecutionFailed,
    ValidationRejected,
)

logger = logging.getLogger(__name__)

REPHRASE_MESSAGE = "Sorry, I had trouble looking that up. Try rephrasing your question."
FORMAT_FAILED_MESSAGE = (
    "Sorry, I couldn't put that answer together just now. Please try again."
)


# ============================================================================
# VALIDATOR GATE
# ============================================================================

READ_ONLY = re.compile(r"^SELECT\b")

# The tenant predicate must compare against the bound parameter, never a literal id
TENANT_PREDICATE = re.compile(r"\bUSER_ID\s*=\s*\$1(?!\d)")
TENANT_COLUMN = re.compile(r"\bUSER_ID\b")
SELECT_KEYWORD = re.compile(r"\bSELECT\b")
# Set operators and OR can widen a scoped predicate to other tenants' rows
SCOPE_WIDENING = re.compile(r"\b(OR|UNION|INTERSECT|EXCEPT)\b")

FORBIDDEN_KEYWORDS = [
    # data modification
    "DELETE", "UPDATE", "INSERT", "MERGE", "UPSERT", "TRUNCATE", "INTO", "COPY",
    # schema modification
    "DROP", "ALTER", "CREATE", "COMMENT",
    # privileges and session state
    "GRANT", "REVOKE", "SET", "RESET",
    # procedural escapes
    "EXEC", "EXECUTE", "CALL", "DO",
    "PG_SLEEP", "PG_READ_FILE", "DBLINK", "LO_IMPORT", "LO_EXPORT",
]
FORBIDDEN_PATTERNS = [
    (keyword, re.compile(rf"\b{keyword}\b")) for keyword in FORBIDDEN_KEYWORDS
]
COMMENT_MARKERS = ["--", "/*", "*/"]

STATEMENT_SEPARATOR = ";"


def validate_query(query_text: str) -> schemas.ValidationResult:
    """
    Decide whether a generated query may run. First failing rule wins.

    Rules:
        1. Starts with SELECT
        2. Scoped to the tenant: contains user_id = $1, every user_id
           reference is that predicate, every SELECT has one, and nothing
           (OR, UNION...) widens it
        3. No mutating, escalating or comment keyword as a whole word
        4. No statement separator

    Examples:
        "SELECT * FROM transactions"                     → invalid
        "SELECT * FROM transactions WHERE user_id = $1"  → valid
        "... ORDER BY updated_at"                        → not mistaken for UPDATE
    """
    if not isinstance(query_text, str):
        return schemas.ValidationResult(
            valid=False, reason="only read queries are allowed."
        )

    upper = query_text.upper().strip()

    if not READ_ONLY.match(upper):
        return schemas.ValidationResult(
            valid=False, reason="only read queries are allowed."
        )

    predicates = len(TENANT_PREDICATE.findall(upper))
    if (
        predicates == 0
        or len(TENANT_COLUMN.findall(upper)) != predicates
        or len(SELECT_KEYWORD.findall(upper)) > predicates
        or SCOPE_WIDENING.search(upper)
    ):
        return schemas.ValidationResult(
            valid=False, reason="query must filter by tenant."
        )

    for keyword, pattern in FORBIDDEN_PATTERNS:
        if pattern.search(upper):
            return schemas.ValidationResult(
                valid=False, reason=f"forbidden keyword: {keyword}"
            )

    for marker in COMMENT_MARKERS:
        if marker in upper:
            return schemas.ValidationResult(
                valid=False, reason=f"forbidden keyword: {marker}"
            )

    if STATEMENT_SEPARATOR in upper:
        return schemas.ValidationResult(
            valid=False, reason="only a single statement is allowed."
        )

    return schemas.ValidationResult(valid=True)


# ============================================================================
# GENERATOR
# ============================================================================


class QueryGenerator:
    """Builds the instruction context and parses the model's {sql, explanation}."""

    def __init__(self, llm, max_output_tokens: int = 500):
        self.llm = llm
        self.max_output_tokens = max_output_tokens

    async def generate(
        self, question: str, history: List[schemas.HistoryTurn]
    ) -> schemas.GeneratedQuery:
        prompt = prompts.get_query_generator_prompt(question, history)
        reply = await self.llm.generate(
            prompt, temperature=0.1, max_output_tokens=self.max_output_tokens
        )
        data = parse_json_reply(reply)

        query = data.get("sql") or data.get("query")
        if not isinstance(query, str) or not query.strip():
            raise GenerationFailed("model reply has no query")

        explanation = data.get("explanation")
        if not isinstance(explanation, str):
            explanation = ""

        return schemas.GeneratedQuery(query=query.strip(), explanation=explanation)


# ============================================================================
# EXECUTOR
# ============================================================================

QueryRunner = Callable[[str, int, AsyncSession, int], Awaitable[List[Dict[str, Any]]]]


class QueryExecutor:
    """Runs validated queries through the single tenant-bound storage entry point."""

    def __init__(self, runner: QueryRunner = storage.run_tenant_query, max_rows: int = 20):
        self.runner = runner
        self.max_rows = max_rows

    async def execute(
        self, query_text: str, tenant_id: int, db: AsyncSession
    ) -> List[Dict[str, Any]]:
        """
        Raises:
            ValidationRejected: the query does not pass validate_query()
            QueryExecutionFailed: the storage layer raised
        """
        verdict = validate_query(query_text)
        if not verdict.valid:
            raise ValidationRejected(verdict.reason)

        try:
            rows = await self.runner(query_text, tenant_id, db, self.max_rows)
        except SQLAlchemyError as error:
            await db.rollback()
            logger.error(f"[Tenant {tenant_id}] Query execution error: {error}")
            raise QueryExecutionFailed(str(error)) from error

        return list(rows)[: self.max_rows]


# ============================================================================
# FORMATTER
# ============================================================================


class ResponseFormatter:
    def __init__(self, llm, max_chars: int = 1500, max_output_tokens: int = 1000):
        self.llm = llm
        self.max_chars = max_chars
        self.max_output_tokens = max_output_tokens

    async def format(
        self, question: str, rows: List[Dict[str, Any]], explanation: str
    ) -> str:
        prompt = prompts.get_response_formatter_prompt(
            question, rows, explanation, self.max_chars
        )
        reply = await self.llm.generate(
            prompt, temperature=0.3, max_output_tokens=self.max_output_tokens
        )
        return truncate_message(reply.strip(), self.max_chars)


def truncate_message(message: str, max_chars: int) -> str:
    if len(message) <= max_chars:
        return message
    return message[: max_chars - 1].rstrip() + "…"


# ============================================================================
# GATEWAY
# ============================================================================


class QueryGateway:
    """
    Answers one free-form question for one tenant.

    Always returns a QueryAnswer: every failure along the way becomes an
    apology the tenant can act on, and internal detail stays in the logs.
    """

    def __init__(
        self,
        generator: QueryGenerator,
        executor: QueryExecutor,
        formatter: ResponseFormatter,
        history_turns: int = 5,
    ):
        self.generator = generator
        self.executor = executor
        self.formatter = formatter
        self.history_turns = history_turns

    async def answer(
        self, question: str, tenant_id: int, db: AsyncSession
    ) -> schemas.QueryAnswer:
        history = await self._load_history(tenant_id, db)
        await self._log_turn(tenant_id, schemas.TurnRole.USER, question, db)

        try:
            generated = await self.generator.generate(question, history)
        except GenerationFailed as error:
            logger.warning(f"[Tenant {tenant_id}] Query generation failed: {error}")
            return await self._reply(tenant_id, REPHRASE_MESSAGE, db)

        try:
            rows = await self.executor.execute(generated.query, tenant_id, db)
        except ValidationRejected as error:
            logger.warning(
                f"[Tenant {tenant_id}] Rejected generated query ({error.reason}): {generated.query}"
            )
            message = (
                f"I couldn't safely answer that question: {error.reason} "
                "Try asking it a different way."
            )
            return await self._reply(tenant_id, message, db)
        except QueryExecutionFailed:
            return await self._reply(
                tenant_id, REPHRASE_MESSAGE, db, query=generated.query
            )

        try:
            message = await self.formatter.format(question, rows, generated.explanation)
        except GenerationFailed as error:
            logger.warning(f"[Tenant {tenant_id}] Response formatting failed: {error}")
            return await self._reply(
                tenant_id, FORMAT_FAILED_MESSAGE, db, query=generated.query
            )

        return await self._reply(tenant_id, message, db, rows=rows, query=generated.query)

    async def _reply(
        self,
        tenant_id: int,
        message: str,
        db: AsyncSession,
        rows: List[Dict[str, Any]] = None,
        query: str = None,
    ) -> schemas.QueryAnswer:
        rows = rows or []
        await self._log_turn(
            tenant_id,
            schemas.TurnRole.ASSISTANT,
            message,
            db,
            message_type=schemas.TurnType.QUERY_RESULT,
            meta={"sql": query, "result_count": len(rows)},
        )
        return schemas.QueryAnswer(answer=message, data=rows, query=query)

    async def _load_history(
        self, tenant_id: int, db: AsyncSession
    ) -> List[schemas.HistoryTurn]:
        # Without history the question is still answerable, just with less context
        try:
            return await storage.get_recent_turns(tenant_id, db, limit=self.history_turns)
        except SQLAlchemyError as error:
            await db.rollback()
            logger.warning(f"[Tenant {tenant_id}] Could not load conversation history: {error}")
            return []

    async def _log_turn(self, tenant_id: int, role, content: str, db: AsyncSession, **kwargs):
        # The log is context and audit trail; losing one entry must not lose the reply
        try:
            await storage.append_turn(tenant_id, role, content, db, **kwargs)
        except SQLAlchemyError as error:
            await db.rollback()
            logger.warning(f"[Tenant {tenant_id}] Could not log {role.value} turn: {error}")
