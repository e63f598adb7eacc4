# Overview: Pytest coverage for the extraction usage meter.

import pytest

from stockline.models import AIUsageRecord
from stockline.services.extractors import UsageSample
from stockline.services.usage_service import estimate_cost, get_usage_stats, record_usage
from stockline.time_utils import utcnow


TENANT = "acme"


class TestEstimateCost:

    def test_priced_model(self):
        assert estimate_cost("openai", "gpt-4o-mini", 1000, 500) == pytest.approx(0.00045)

    def test_local_engine_is_free(self):
        assert estimate_cost("tesseract", "eng", 0, 0) == 0.0

    def test_unknown_model_is_free(self):
        assert estimate_cost("openai", "gpt-next", 1000, 1000) == 0.0


class TestRecordUsage:

    def test_persists_record(self, db_session):
        sample = UsageSample(service="openai", model="gpt-4o-mini", tokens_input=1000, tokens_output=500,
                             duration_ms=840, details={"products_found": 3})
        record = record_usage(tenant_id=TENANT, sample=sample, session_id="abc123")

        stored = db_session.get(AIUsageRecord, record.id)
        assert stored.tokens_total == 1500
        assert stored.cost_estimate == pytest.approx(0.00045)
        assert stored.session_id == "abc123"
        assert stored.operation == "extract_inventory"
        assert stored.details == {"products_found": 3}

    def test_failure_is_recorded(self, db_session):
        sample = UsageSample(service="anthropic", model="claude-3-haiku-20240307", success=False,
                             error_message="timeout")
        record = record_usage(tenant_id=TENANT, sample=sample)
        assert record.success is False
        assert record.error_message == "timeout"


class TestUsageStats:

    def test_empty(self, db_session):
        stats = get_usage_stats(TENANT)
        assert stats["total_calls"] == 0
        assert stats["total_tokens"] == 0
        assert stats["success_rate"] == "N/A"
        assert stats["by_month"] == {}
        assert stats["by_service"] == []

    def test_aggregates(self, db_session):
        record_usage(tenant_id=TENANT, sample=UsageSample(
            service="openai", model="gpt-4o", tokens_input=1000, tokens_output=1000))
        record_usage(tenant_id=TENANT, sample=UsageSample(
            service="openai", model="gpt-4o", tokens_input=0, tokens_output=0, success=False))
        record_usage(tenant_id=TENANT, sample=UsageSample(service="tesseract", model="eng"))
        record_usage(tenant_id=TENANT, sample=UsageSample(service="tesseract", model="eng"))
        record_usage(tenant_id="globex", sample=UsageSample(
            service="openai", model="gpt-4o", tokens_input=5000, tokens_output=5000))

        stats = get_usage_stats(TENANT)

        assert stats["total_calls"] == 4
        assert stats["total_tokens"] == 2000
        assert stats["total_cost"] == pytest.approx(0.02)
        assert stats["success_rate"] == "75.0%"
        month = utcnow().strftime("%Y-%m")
        assert list(stats["by_month"]) == [month]
        assert stats["by_month"][month]["calls"] == 4
        assert [s["service"] for s in stats["by_service"]] == ["openai", "tesseract"]
        assert stats["by_service"][0]["calls"] == 2
