# Overview: Service-layer operations for the extraction usage meter.

from __future__ import annotations

import logging
from collections import OrderedDict

from sqlalchemy import case, func
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import AIUsageRecord
from .extractors import UsageSample


logger = logging.getLogger(__name__)

# USD per 1k tokens (approximate list prices)
PRICING = {
    "openai": {
        "gpt-4-vision-preview": {"input": 0.01, "output": 0.03},
        "gpt-4o": {"input": 0.005, "output": 0.015},
        "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
    },
    "anthropic": {
        "claude-3-5-sonnet-20241022": {"input": 0.003, "output": 0.015},
        "claude-3-haiku-20240307": {"input": 0.00025, "output": 0.00125},
    },
}

MONTHS_REPORTED = 12


def estimate_cost(service: str, model: str, tokens_input: int, tokens_output: int) -> float:
    """Zero for local engines and unpriced models."""
    pricing = PRICING.get(service, {}).get(model)
    if not pricing:
        return 0.0
    return tokens_input / 1000 * pricing["input"] + tokens_output / 1000 * pricing["output"]


def record_usage(
    *,
    tenant_id: str,
    sample: UsageSample,
    session_id: str | None = None,
) -> AIUsageRecord | None:
    """
    Persist one usage record in its own short transaction.

    Metering must never break an import: database failures are logged and
    swallowed, and None is returned.
    """
    record = AIUsageRecord(
        tenant_id=tenant_id,
        service=sample.service,
        model=sample.model,
        operation=sample.operation,
        tokens_input=sample.tokens_input,
        tokens_output=sample.tokens_output,
        tokens_total=sample.tokens_input + sample.tokens_output,
        cost_estimate=estimate_cost(sample.service, sample.model, sample.tokens_input, sample.tokens_output),
        duration_ms=sample.duration_ms,
        session_id=session_id,
        success=sample.success,
        error_message=sample.error_message,
        details=sample.details,
    )
    try:
        db.session.add(record)
        db.session.commit()
        return record
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Failed to record extraction usage for tenant %s", tenant_id)
        return None


def get_usage_stats(tenant_id: str) -> dict:
    total_calls, total_tokens, total_cost, successful = (
        db.session.query(
            func.count(AIUsageRecord.id),
            func.coalesce(func.sum(AIUsageRecord.tokens_total), 0),
            func.coalesce(func.sum(AIUsageRecord.cost_estimate), 0.0),
            func.coalesce(func.sum(case((AIUsageRecord.success.is_(True), 1), else_=0)), 0),
        )
        .filter(AIUsageRecord.tenant_id == tenant_id)
        .one()
    )

    by_service_rows = (
        db.session.query(
            AIUsageRecord.service,
            AIUsageRecord.model,
            func.count(AIUsageRecord.id),
            func.coalesce(func.sum(AIUsageRecord.tokens_total), 0),
            func.coalesce(func.sum(AIUsageRecord.cost_estimate), 0.0),
        )
        .filter(AIUsageRecord.tenant_id == tenant_id)
        .group_by(AIUsageRecord.service, AIUsageRecord.model)
        .all()
    )
    by_service = sorted(
        (
            {"service": s, "model": m, "calls": int(c), "tokens": int(t), "cost": round(float(cost), 6)}
            for s, m, c, t, cost in by_service_rows
        ),
        key=lambda item: item["cost"],
        reverse=True,
    )

    # Month bucketing in Python keeps this portable across SQLite and PostgreSQL
    months: dict[str, dict] = {}
    for created_at, tokens, cost in (
        db.session.query(AIUsageRecord.created_at, AIUsageRecord.tokens_total, AIUsageRecord.cost_estimate)
        .filter(AIUsageRecord.tenant_id == tenant_id)
        .all()
    ):
        key = created_at.strftime("%Y-%m")
        bucket = months.setdefault(key, {"calls": 0, "tokens": 0, "cost": 0.0})
        bucket["calls"] += 1
        bucket["tokens"] += tokens or 0
        bucket["cost"] += cost or 0.0
    by_month = OrderedDict()
    for key in sorted(months, reverse=True)[:MONTHS_REPORTED]:
        bucket = months[key]
        by_month[key] = {**bucket, "cost": round(bucket["cost"], 6)}

    return {
        "total_calls": int(total_calls),
        "total_tokens": int(total_tokens),
        "total_cost": round(float(total_cost), 6),
        "success_rate": f"{successful / total_calls * 100:.1f}%" if total_calls else "N/A",
        "by_month": by_month,
        "by_service": by_service,
    }
