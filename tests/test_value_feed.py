"""Daily value-feed parsing and ingestion"""
from datetime import date

import httpx
import pytest

from services.errors import MalformedFeedError, TransientProviderError
from services.identifiers import normalize_identifier
from services.jobs.value_feed import DailyValueFeedJob, parse_feed, parse_feed_line
from services.returns_service import ReturnsService
from services.scheduler import JobContext

FEED = """Scheme Code;ISIN Div Payout/ ISIN Growth;ISIN Div Reinvestment;Scheme Name;Net Asset Value;Date

Open Ended Schemes(Equity Scheme - Large Cap Fund)

XYZ Mutual Fund

119551;INF209K01157;INF209K01165;XYZ Fund;23.45;17-Nov-2025
120503;INF846K01EW2;-;ABC Bluechip Fund;48.1;17-Nov-2025
100001;-;-;Unknown Fund;N.A.;17-Nov-2025
100002;-;-;Broken Date Fund;12.5;2025-11-17
999999;-;-;Unmatched Fund;10.0;17-Nov-2025

Open Ended Schemes(Debt Scheme - Liquid Fund)

ABC Mutual Fund
120600;INF846K01ZZ1;-;ABC Liquid Fund;1040.25;17-Nov-2025
"""


def test_parse_feed_line_example():
    record = parse_feed_line("119551;INF209K01157;INF209K01165;XYZ Fund;23.45;17-Nov-2025")
    assert record.code == "119551"
    assert record.value == 23.45
    assert record.value_date == date(2025, 11, 17)
    assert record.isin_growth == "INF209K01157"
    assert record.isin_reinvest == "INF209K01165"
    assert record.name == "XYZ Fund"


def test_placeholder_alt_ids_are_absent():
    record = parse_feed_line("120503;INF846K01EW2;-;ABC Bluechip Fund;48.1;17-Nov-2025")
    assert record.isin_reinvest is None


def test_short_records_keep_name_and_isin_apart():
    five = parse_feed_line("119551;INF209K01157;XYZ Fund;23.45;17-Nov-2025")
    four = parse_feed_line("119551;XYZ Fund;23.45;17-Nov-2025")

    assert (five.isin_growth, five.isin_reinvest, five.name) == ("INF209K01157", None, "XYZ Fund")
    assert (four.isin_growth, four.isin_reinvest, four.name) == (None, None, "XYZ Fund")


@pytest.mark.parametrize("line", [
    "119551;INF209K01157;-;XYZ Fund;nan;17-Nov-2025",
    "119551;INF209K01157;-;XYZ Fund;inf;17-Nov-2025",
    "119551;XYZ Fund",
    ";INF209K01157;-;XYZ Fund;23.45;17-Nov-2025",
    "119551;INF209K01157;-;XYZ Fund;N.A.;17-Nov-2025",
    "119551;INF209K01157;-;XYZ Fund;23.45;2025-11-17",
])
def test_malformed_lines(line):
    with pytest.raises(MalformedFeedError) as exc:
        parse_feed_line(line, line_no=7)
    assert exc.value.line_no == 7


def test_parse_feed_skips_malformed_records_and_tracks_headers():
    parsed = parse_feed(FEED)

    assert [r.code for r in parsed.records] == ["119551", "120503", "999999", "120600"]
    assert parsed.malformed == 2
    assert parsed.headers == 5
    assert parsed.records[0].amc == "XYZ Mutual Fund"
    assert parsed.records[0].category == "Equity"
    assert parsed.records[0].sub_category == "Large Cap Fund"
    assert parsed.records[-1].amc == "ABC Mutual Fund"
    assert parsed.records[-1].category == "Debt"


def make_job(store, text=None, status=200, recompute_delay=0.0):
    def handler(request):
        return httpx.Response(status, text=text or "")

    return DailyValueFeedJob(
        store,
        ReturnsService(store),
        "https://feed.test/NAVAll.txt",
        recompute_delay=recompute_delay,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_ingest_matches_by_code_and_isin(store, fund_factory):
    await store.upsert_instruments([
        fund_factory(value=23.0, value_date=date(2025, 11, 14)),
        # stored under a different code, matched through its ISIN
        fund_factory(code="ABC-BLUECHIP", isin_growth="INF846K01EW2", isin_reinvest=None, value=None, value_date=None),
        fund_factory(code="120600", isin_growth="INF846K01ZZ1", isin_reinvest=None, value=None, value_date=None),
    ])
    await store.upsert_values([{"scheme_code": "119551", "value": 20.0, "value_date": date(2024, 11, 15)}])
    job = make_job(store, FEED)

    result = await job(JobContext("test-nav"))
    await job.drain()

    assert result["success"] is True
    assert result["total_fetched"] == 4
    assert result["malformed"] == 2
    assert result["matched"] == 3
    assert result["stored"] == 3

    record = await store.find(normalize_identifier("119551"))
    assert record["value"] == 23.45
    assert record["value_date"] == "2025-11-17"
    assert record["return_1y"] == pytest.approx(17.25)

    other = await store.find(normalize_identifier("INF846K01EW2"))
    assert other["scheme_code"] == "ABC-BLUECHIP"
    assert other["value"] == 48.1


@pytest.mark.asyncio
async def test_ingest_prunes_history_beyond_retention(store, fund_factory):
    await store.upsert_instruments([fund_factory()])
    await store.upsert_values([{"scheme_code": "119551", "value": 5.0, "value_date": date(2001, 1, 2)}])

    job = make_job(store)
    result = await job.ingest(FEED, JobContext("test-nav"))
    await job.drain()

    assert result["pruned"] == 1


@pytest.mark.asyncio
async def test_feed_without_records_reports_instead_of_raising(store):
    text = "XYZ Mutual Fund\n\n100001;-;-;Bad;N.A.;17-Nov-2025\n100002;-;-;Worse;nan;17-Nov-2025\n"

    result = await make_job(store).ingest(text, JobContext("test-nav"))

    assert result["success"] is False
    assert result["reason"] == "no records in feed"
    assert result["malformed"] == 2
    assert result["total_fetched"] == 0


@pytest.mark.asyncio
async def test_upstream_error_is_transient(store):
    with pytest.raises(TransientProviderError):
        await make_job(store, status=502)(JobContext("test-nav"))
