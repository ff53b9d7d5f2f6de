from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock, patch

import pytest

from assistant.errors import SummaryRequestError
from assistant.models import GroupSummary
from assistant.services.summary_service import (
    INSUFFICIENT_DATA,
    PERIOD_TTL_SECONDS,
    SummaryCache,
    SummaryPeriod,
    cache_key,
    extract_summary_period,
    generate_daily_summaries,
    get_or_generate,
    is_summary_request,
    list_summaries,
    normalize_period,
    queue_summary,
    request_summary,
    upsert_group_summary,
)

GROUP = "120363000000@g.us"
INDIVIDUAL = "5511999990000@s.whatsapp.net"


@pytest.fixture
def generate_summary():
    with patch("assistant.services.ai_service.generate_group_summary", new=AsyncMock(return_value="digest")) as mock:
        yield mock


@pytest.fixture
def queues():
    return Mock(add_summary_job=AsyncMock(return_value=Mock(id="job-1")))


class TestPeriods:
    def test_normalize_period(self):
        assert normalize_period("48h") == SummaryPeriod.TWO_DAYS
        assert normalize_period("1week") == SummaryPeriod.WEEK
        assert normalize_period("3d") == SummaryPeriod.DAY
        assert normalize_period(None) == SummaryPeriod.DAY

    def test_extract_period_from_text(self):
        assert extract_summary_period("resumo das últimas 48 horas") == SummaryPeriod.TWO_DAYS
        assert extract_summary_period("summary of last week") == SummaryPeriod.WEEK
        assert extract_summary_period("resumo 24h") == SummaryPeriod.DAY
        assert extract_summary_period("resumo") == SummaryPeriod.DAY

    def test_summary_request_keywords(self):
        assert is_summary_request("Alguém pode fazer um RESUMO?") is True
        assert is_summary_request("bom dia") is False

    def test_ttl_grows_with_window(self):
        assert PERIOD_TTL_SECONDS[SummaryPeriod.DAY] == 3600
        assert PERIOD_TTL_SECONDS[SummaryPeriod.TWO_DAYS] == 7200
        assert PERIOD_TTL_SECONDS[SummaryPeriod.WEEK] == 14400


class TestSummaryCache:
    @pytest.mark.asyncio
    async def test_roundtrip_with_ttl(self, fake_redis):
        cache = SummaryCache(fake_redis)
        await cache.set(GROUP, SummaryPeriod.TWO_DAYS, "texto")

        assert await cache.get(GROUP, SummaryPeriod.TWO_DAYS) == "texto"
        assert fake_redis.ttls[cache_key(GROUP, SummaryPeriod.TWO_DAYS)] == 7200

    @pytest.mark.asyncio
    async def test_redis_errors_read_as_miss(self):
        client = Mock(get=AsyncMock(side_effect=ConnectionError("down")), setex=AsyncMock(side_effect=ConnectionError))
        cache = SummaryCache(client)

        assert await cache.get(GROUP, SummaryPeriod.DAY) is None
        await cache.set(GROUP, SummaryPeriod.DAY, "texto")

    @pytest.mark.asyncio
    async def test_no_client(self):
        assert await SummaryCache(None).get(GROUP, SummaryPeriod.DAY) is None


class TestGetOrGenerate:
    @pytest.mark.asyncio
    async def test_second_call_within_ttl_hits_cache(self, db_session, fake_redis, store_group_messages, generate_summary):
        store_group_messages(GROUP, 6)
        cache = SummaryCache(fake_redis)

        first = await get_or_generate(db_session, GROUP, "24h", cache=cache)
        second = await get_or_generate(db_session, GROUP, "24h", cache=cache)

        assert first == second == "digest"
        generate_summary.assert_awaited_once()
        assert fake_redis.ttls[cache_key(GROUP, SummaryPeriod.DAY)] == 3600
        row = db_session.query(GroupSummary).one()
        assert row.message_count == 6
        assert row.summary_period == "24h"

    @pytest.mark.asyncio
    async def test_call_after_ttl_expiry_generates_again(
        self, db_session, fake_redis, store_group_messages, generate_summary
    ):
        store_group_messages(GROUP, 6)
        generate_summary.side_effect = ["digest", "fresh digest"]
        cache = SummaryCache(fake_redis)

        assert await get_or_generate(db_session, GROUP, "24h", cache=cache) == "digest"
        fake_redis.advance(PERIOD_TTL_SECONDS[SummaryPeriod.DAY] - 1)
        assert await get_or_generate(db_session, GROUP, "24h", cache=cache) == "digest"
        assert generate_summary.await_count == 1

        fake_redis.advance(1)
        assert await get_or_generate(db_session, GROUP, "24h", cache=cache) == "fresh digest"
        assert generate_summary.await_count == 2
        assert await cache.get(GROUP, SummaryPeriod.DAY) == "fresh digest"

    @pytest.mark.asyncio
    async def test_insufficient_messages(self, db_session, fake_redis, store_group_messages, generate_summary):
        store_group_messages(GROUP, 4)

        result = await get_or_generate(db_session, GROUP, "24h", cache=SummaryCache(fake_redis))

        assert result == INSUFFICIENT_DATA
        generate_summary.assert_not_awaited()
        assert fake_redis.values == {}
        assert db_session.query(GroupSummary).count() == 0

    @pytest.mark.asyncio
    async def test_force_skips_cache(self, db_session, fake_redis, store_group_messages, generate_summary):
        store_group_messages(GROUP, 5)
        cache = SummaryCache(fake_redis)
        await cache.set(GROUP, SummaryPeriod.DAY, "stale")

        result = await get_or_generate(db_session, GROUP, "24h", force=True, cache=cache)

        assert result == "digest"
        assert await cache.get(GROUP, SummaryPeriod.DAY) == "digest"

    @pytest.mark.asyncio
    async def test_only_messages_inside_window(self, db_session, fake_redis, store_message, generate_summary):
        now = datetime.now(timezone.utc)
        for i in range(5):
            store_message(f"old-{i}", GROUP, created_at=now - timedelta(hours=30, minutes=i))
        store_message("new", GROUP, created_at=now - timedelta(minutes=5))

        result = await get_or_generate(db_session, GROUP, "24h", cache=SummaryCache(fake_redis), now=now)

        assert result == INSUFFICIENT_DATA

    def test_upsert_same_window_updates_row(self, db_session):
        start = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)
        end = start + timedelta(hours=24)

        upsert_group_summary(db_session, GROUP, SummaryPeriod.DAY, "v1", 5, start, end)
        upsert_group_summary(db_session, GROUP, SummaryPeriod.DAY, "v2", 7, start, end)

        row = db_session.query(GroupSummary).one()
        assert row.summary_text == "v2"
        assert row.message_count == 7


class TestQueueSummary:
    @pytest.mark.asyncio
    async def test_unknown_chat(self, db_session, queues):
        with pytest.raises(SummaryRequestError) as exc:
            await request_summary(db_session, "ghost@g.us", INDIVIDUAL, queues)
        assert exc.value.status_code == 404

    @pytest.mark.asyncio
    async def test_individual_chat_rejected(self, db_session, queues, store_message):
        store_message("M1", INDIVIDUAL)
        with pytest.raises(SummaryRequestError) as exc:
            await request_summary(db_session, INDIVIDUAL, INDIVIDUAL, queues)
        assert exc.value.status_code == 400

    @pytest.mark.asyncio
    async def test_too_few_messages(self, db_session, queues, store_group_messages):
        store_group_messages(GROUP, 3)
        with pytest.raises(SummaryRequestError) as exc:
            await request_summary(db_session, GROUP, INDIVIDUAL, queues)
        assert exc.value.status_code == 400
        queues.add_summary_job.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_request_enqueues_forced_daily_job(self, db_session, queues, store_group_messages):
        store_group_messages(GROUP, 12)

        response = await request_summary(db_session, GROUP, INDIVIDUAL, queues)

        queues.add_summary_job.assert_awaited_once_with(
            {"chatId": GROUP, "period": "24h", "requesterId": INDIVIDUAL, "force": True}
        )
        assert response == {
            "job_id": "job-1",
            "chat_id": GROUP,
            "period": "24h",
            "message_count": 12,
            "estimated_time": 2,
        }

    @pytest.mark.asyncio
    async def test_existing_summary_conflicts_without_force(self, db_session, queues, store_group_messages):
        store_group_messages(GROUP, 6)
        now = datetime.now(timezone.utc)
        upsert_group_summary(db_session, GROUP, SummaryPeriod.DAY, "já feito", 6, now - timedelta(hours=24), now)

        with pytest.raises(SummaryRequestError) as exc:
            await queue_summary(db_session, GROUP, "api", queues, "24h", force=False)
        assert exc.value.status_code == 409

        await queue_summary(db_session, GROUP, "api", queues, "24h", force=True)
        queues.add_summary_job.assert_awaited_once()


class TestDailySummaries:
    @pytest.mark.asyncio
    async def test_only_busy_groups_without_todays_summary(self, db_session, queues, store_group_messages):
        store_group_messages("busy@g.us", 10)
        store_group_messages("quiet@g.us", 3)
        store_group_messages("done@g.us", 11)
        now = datetime.now(timezone.utc)
        upsert_group_summary(db_session, "done@g.us", SummaryPeriod.DAY, "ok", 11, now - timedelta(hours=24), now)

        queued = await generate_daily_summaries(db_session, queues, now=now)

        assert queued == ["busy@g.us"]
        queues.add_summary_job.assert_awaited_once_with(
            {"chatId": "busy@g.us", "period": "24h", "requesterId": "system", "force": False}
        )


class TestListSummaries:
    def test_filters_and_pages(self, db_session):
        base = datetime(2026, 10, 1, tzinfo=timezone.utc)
        for day in range(3):
            start = base + timedelta(days=day)
            upsert_group_summary(db_session, GROUP, SummaryPeriod.DAY, f"d{day}", 5, start, start + timedelta(days=1))
        upsert_group_summary(db_session, GROUP, SummaryPeriod.WEEK, "w", 30, base, base + timedelta(days=7))

        total, rows = list_summaries(db_session, GROUP, "24h", limit=2)

        assert total == 3
        assert len(rows) == 2
        assert all(r.summary_period == "24h" for r in rows)
