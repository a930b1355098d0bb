import json
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from ledgerbot.assistant.query_engine import (
    FORMAT_FAILED_MESSAGE,
    REPHRASE_MESSAGE,
    QueryExecutor,
    QueryGenerator,
)
from ledgerbot.core import models, schemas, storage
from ledgerbot.core.exceptions import GenerationFailed, ValidationRejected

FOOD_QUERY = (
    "SELECT category, SUM(amount) AS total FROM transactions "
    "WHERE user_id = $1 AND category = 'Food / Meals' GROUP BY category"
)


def generated(sql, explanation="Total spent on food"):
    return json.dumps({"sql": sql, "explanation": explanation})


async def add_rows(db, tenant_id, count, category="Food / Meals", amount="100.00"):
    rows = [
        schemas.CategorizedRow(
            date="2026-10-05",
            description=f"Tea #{i}",
            amount=Decimal(amount),
            type="debit",
            category=category,
        )
        for i in range(count)
    ]
    await storage.store_transactions(tenant_id, None, rows, db)


# =========================
# Generator
# =========================
@pytest.mark.asyncio
async def test_generator_parses_fenced_json(llm):
    llm.queue("```json\n" + generated(FOOD_QUERY) + "\n```")

    result = await QueryGenerator(llm).generate("how much on food?", [])

    assert result.query == FOOD_QUERY
    assert result.explanation == "Total spent on food"


@pytest.mark.asyncio
async def test_generator_prompt_carries_rules_and_history(llm):
    llm.queue(generated(FOOD_QUERY))
    history = [
        schemas.HistoryTurn(role="user", content="what did I spend in September?"),
        schemas.HistoryTurn(role="assistant", content="You spent 12,000.00"),
    ]

    await QueryGenerator(llm).generate("and on food?", history)

    prompt = llm.calls[0]["prompt"]
    assert "user_id = $1" in prompt
    assert "No semicolons" in prompt
    assert prompt.index("what did I spend in September?") < prompt.index("You spent 12,000.00")
    assert '"and on food?"' in prompt


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reply",
    ["I think you spent a lot", "[1, 2, 3]", json.dumps({"explanation": "no query"})],
)
async def test_generator_rejects_malformed_output(llm, reply):
    llm.queue(reply)

    with pytest.raises(GenerationFailed):
        await QueryGenerator(llm).generate("how much on food?", [])


# =========================
# Executor
# =========================
@pytest.mark.asyncio
async def test_executor_binds_tenant_id(db_session, tenant, other_tenant):
    tenant_id, other_id = tenant.id, other_tenant.id
    await add_rows(db_session, tenant_id, 2, amount="50.00")
    await add_rows(db_session, other_id, 3, amount="999.00")

    rows = await QueryExecutor().execute(FOOD_QUERY, tenant_id, db_session)

    assert len(rows) == 1
    assert rows[0]["category"] == "Food / Meals"
    assert float(rows[0]["total"]) == pytest.approx(100.0)


@pytest.mark.asyncio
async def test_executor_caps_rows(db_session, tenant):
    tenant_id = tenant.id
    await add_rows(db_session, tenant_id, 30)

    rows = await QueryExecutor(max_rows=20).execute(
        "SELECT id, amount FROM transactions WHERE user_id = $1 LIMIT 500",
        tenant_id,
        db_session,
    )

    assert len(rows) == 20


@pytest.mark.asyncio
async def test_executor_refuses_unvalidated_query(db_session, tenant):
    calls = []

    async def runner(*args):
        calls.append(args)
        return []

    with pytest.raises(ValidationRejected) as excinfo:
        await QueryExecutor(runner=runner).execute(
            "SELECT * FROM transactions", tenant.id, db_session
        )

    assert excinfo.value.reason == "query must filter by tenant."
    assert calls == []


# =========================
# Gateway
# =========================
@pytest.mark.asyncio
async def test_gateway_answers_food_question(db_session, tenant, llm, gateway):
    tenant_id = tenant.id
    await add_rows(db_session, tenant_id, 3)
    llm.queue(generated(FOOD_QUERY), "You spent *300.00* on food. Ask me anything else!")

    answer = await gateway.answer("how much did I spend on food", tenant_id, db_session)

    assert answer.answer == "You spent *300.00* on food. Ask me anything else!"
    assert answer.query == FOOD_QUERY
    assert len(answer.data) <= 20
    assert float(answer.data[0]["total"]) == pytest.approx(300.0)

    turns = await storage.get_recent_turns(tenant_id, db_session)
    assert [turn.role.value for turn in turns] == ["user", "assistant"]
    assert turns[0].content == "how much did I spend on food"


@pytest.mark.asyncio
async def test_gateway_bounds_reply_length(db_session, tenant, llm, gateway):
    llm.queue(generated(FOOD_QUERY), "x" * 5000)

    answer = await gateway.answer("how much on food?", tenant.id, db_session)

    assert len(answer.answer) <= 1500


@pytest.mark.asyncio
async def test_gateway_rejected_query_never_echoes_sql(db_session, tenant, llm, gateway):
    unscoped = "SELECT * FROM transactions"
    llm.queue(generated(unscoped))

    answer = await gateway.answer("show everyone's spending", tenant.id, db_session)

    assert "query must filter by tenant." in answer.answer
    assert "SELECT" not in answer.answer
    assert answer.data == []
    assert len(llm.calls) == 1  # formatter never runs


@pytest.mark.asyncio
async def test_gateway_generation_failure_asks_to_rephrase(db_session, tenant, llm, gateway):
    llm.queue("not json at all")

    answer = await gateway.answer("food?", tenant.id, db_session)

    assert answer.answer == REPHRASE_MESSAGE
    assert answer.query is None


@pytest.mark.asyncio
async def test_gateway_execution_failure_asks_to_rephrase(db_session, tenant, llm, gateway):
    tenant_id = tenant.id
    llm.queue(generated("SELECT * FROM ledger_entries WHERE user_id = $1"))

    answer = await gateway.answer("food?", tenant_id, db_session)

    assert answer.answer == REPHRASE_MESSAGE
    # the session is still usable and the apology was logged
    turns = await storage.get_recent_turns(tenant_id, db_session)
    assert turns[-1].content == REPHRASE_MESSAGE


@pytest.mark.asyncio
async def test_gateway_formatter_failure_is_terminal(db_session, tenant, llm, gateway):
    llm.queue(generated(FOOD_QUERY), GenerationFailed("Gemini returned an empty response"))

    answer = await gateway.answer("food?", tenant.id, db_session)

    assert answer.answer == FORMAT_FAILED_MESSAGE


@pytest.mark.asyncio
async def test_gateway_uses_last_five_turns_oldest_first(db_session, tenant, llm, gateway):
    tenant_id = tenant.id
    for i in range(7):
        await storage.append_turn(
            tenant_id, schemas.TurnRole.USER, f"question {i}", db_session
        )
    llm.queue(generated(FOOD_QUERY), "Done")

    await gateway.answer("food?", tenant_id, db_session)

    prompt = llm.calls[0]["prompt"]
    assert "question 1" not in prompt
    assert prompt.index("question 2") < prompt.index("question 6")

    count = await db_session.execute(
        select(func.count(models.ConversationTurn.id)).where(
            models.ConversationTurn.user_id == tenant_id
        )
    )
    assert count.scalar_one() == 9


@pytest.mark.asyncio
async def test_gateway_answers_without_history_when_log_is_unreadable(
    db_session, tenant, llm, gateway, monkeypatch
):
    """A broken history read costs context, not the answer"""
    tenant_id = tenant.id

    async def broken_history(*args, **kwargs):
        raise OperationalError("SELECT conversation_messages", {}, Exception("connection reset"))

    monkeypatch.setattr(storage, "get_recent_turns", broken_history)
    llm.queue(generated(FOOD_QUERY), "You haven't spent anything on food yet.")

    answer = await gateway.answer("how much on food", tenant_id, db_session)

    assert answer.answer == "You haven't spent anything on food yet."
    assert "Recent conversation" not in llm.calls[0]["prompt"]
