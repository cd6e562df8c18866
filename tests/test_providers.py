"""Provider adapters against httpx.MockTransport; no network"""
from datetime import date

import httpx
import pytest

from config import Settings
from services.errors import ProviderError, TransientProviderError
from services.providers import build_providers
from services.providers.base import parse_date, parse_float
from services.providers.mfapi import MfapiProvider
from services.providers.oracle import OracleProvider
from services.providers.rapidapi import RapidApiProvider
from services.providers.taxonomy import normalize_category, split_scheme_header

MFAPI_PAYLOAD = {
    "meta": {
        "fund_house": "XYZ Mutual Fund",
        "scheme_type": "Open Ended Schemes",
        "scheme_category": "Equity Scheme - Large Cap Fund",
        "scheme_code": 119551,
        "scheme_name": "XYZ Bluechip Fund - Direct Growth",
        "isin_growth": "INF209K01157",
        "isin_div_reinvestment": None,
    },
    "data": [
        {"date": "17-11-2025", "nav": "23.45000"},
        {"date": "14-11-2025", "nav": "23.10000"},
    ],
    "status": "SUCCESS",
}


def transport_for(routes):
    """routes: path -> (status, json) or a callable(request)"""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        route = routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"detail": "not found"})
        if callable(route):
            return route(request)
        status, body = route
        return httpx.Response(status, json=body)

    return httpx.MockTransport(handler), seen


def test_taxonomy():
    assert normalize_category("Equity Scheme - Large Cap Fund") == "Equity"
    assert normalize_category("Debt Scheme") == "Debt"
    assert normalize_category("Balanced Advantage") == "Hybrid"
    assert normalize_category("Gold ETF") == "Commodity"
    assert normalize_category(None) == "Other"
    assert split_scheme_header("Open Ended Schemes(Hybrid Scheme - Arbitrage Fund)") == ("Hybrid", "Arbitrage Fund")
    assert split_scheme_header("Close Ended Schemes(Income)") == ("Other", None)
    assert split_scheme_header("XYZ Mutual Fund") == (None, None)


def test_parse_helpers():
    assert parse_float("23.45") == 23.45
    assert parse_float("N.A.") is None
    assert parse_float(None) is None
    assert parse_date("17-11-2025") == date(2025, 11, 17)
    assert parse_date("2025-11-17T00:00:00Z") == date(2025, 11, 17)
    assert parse_date("17-Nov-2025") == date(2025, 11, 17)
    assert parse_date("soon") is None


@pytest.mark.asyncio
async def test_mfapi_normalizes_latest_value():
    transport, seen = transport_for({"/mf/119551": (200, MFAPI_PAYLOAD)})
    provider = MfapiProvider("https://api.mfapi.in/mf", transport=transport)

    items = await provider.lookup("119551")

    assert len(items) == 1
    item = items[0]
    assert item.scheme_code == "119551"
    assert item.value == 23.45
    assert item.value_date == date(2025, 11, 17)
    assert item.category == "Equity"
    assert item.amc == "XYZ Mutual Fund"
    assert item.isin_growth == "INF209K01157"
    assert item.isin_reinvest is None
    assert item.data_source == "mfapi"


@pytest.mark.asyncio
async def test_mfapi_ignores_non_codes_and_unknown_codes():
    transport, seen = transport_for({})
    provider = MfapiProvider("https://api.mfapi.in/mf", transport=transport)

    assert await provider.lookup("xyz bluechip") == []
    assert seen == []
    assert await provider.lookup("999999") == []
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_mfapi_empty_payload():
    transport, _ = transport_for({"/mf/119551": (200, {"meta": {}, "data": [], "status": "SUCCESS"})})
    assert await MfapiProvider("https://api.mfapi.in/mf", transport=transport).lookup("119551") == []


@pytest.mark.asyncio
@pytest.mark.parametrize("status,error,reason", [
    (500, TransientProviderError, "provider_upstream"),
    (503, TransientProviderError, "provider_upstream"),
    (429, TransientProviderError, "provider_rate_limited"),
    (401, ProviderError, "provider_auth"),
    (400, ProviderError, "provider_bad_request"),
])
async def test_http_errors_are_typed(status, error, reason):
    transport, _ = transport_for({"/mf/119551": (status, {"error": "nope"})})
    provider = MfapiProvider("https://api.mfapi.in/mf", transport=transport)

    with pytest.raises(error) as exc:
        await provider.lookup("119551")
    assert exc.value.reason == reason
    assert exc.value.provider == "mfapi"


@pytest.mark.asyncio
async def test_timeout_is_transient():
    def timeout(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    transport, _ = transport_for({"/mf/119551": timeout})
    provider = MfapiProvider("https://api.mfapi.in/mf", transport=transport)

    with pytest.raises(TransientProviderError) as exc:
        await provider.lookup("119551")
    assert exc.value.reason == "provider_timeout"


@pytest.mark.asyncio
async def test_oracle_search_sends_bearer_and_normalizes():
    def search(request):
        assert request.headers["Authorization"] == "Bearer secret"
        assert request.url.params["q"] == "xyz bluechip"
        return httpx.Response(200, json={"success": True, "data": [
            {"schemeCode": 119551, "schemeName": "XYZ Bluechip Fund", "category": "Equity", "subCategory": "Large Cap",
             "fundHouse": "XYZ Mutual Fund", "nav": 23.45, "navDate": "2025-11-17", "returns": {"1Y": 12.5, "3Y": "15.1"}},
            {"schemeName": "missing code"},
        ]})

    transport, _ = transport_for({"/api/funds/search": search})
    provider = OracleProvider("https://oracle.test/", "secret", transport=transport)

    items = await provider.lookup("xyz bluechip")

    assert [i.scheme_code for i in items] == ["119551"]
    assert items[0].returns == {"1Y": 12.5, "3Y": 15.1, "5Y": None}
    assert items[0].to_row()["return_3y"] == 15.1
    assert items[0].data_source == "oracle"


@pytest.mark.asyncio
async def test_unconfigured_providers_do_nothing():
    transport, seen = transport_for({})
    assert await OracleProvider(None, None, transport=transport).lookup("x") == []
    assert await RapidApiProvider(None, transport=transport).lookup("x") == []
    assert await OracleProvider(None, None, transport=transport).health_check() is False
    assert seen == []


@pytest.mark.asyncio
async def test_rapidapi_filters_by_code_or_name():
    funds = [
        {"schemeCode": 119551, "schemeName": "XYZ Bluechip Fund", "nav": "23.45", "schemeType": "Open Ended Schemes", "schemeCategory": "Equity Scheme - Large Cap Fund"},
        {"schemeCode": 120503, "schemeName": "ABC Liquid Fund", "nav": "1040.25"},
    ]
    transport, _ = transport_for({"/fetchAllMutualFund": (200, funds)})
    provider = RapidApiProvider("key", host="nav.rapidapi.test", transport=transport)

    by_name = await provider.lookup("bluechip")
    by_code = await provider.lookup("120503")

    assert [i.scheme_code for i in by_name] == ["119551"]
    assert [i.scheme_code for i in by_code] == ["120503"]
    assert by_code[0].value == 1040.25


@pytest.mark.asyncio
async def test_rapidapi_skips_rows_without_code_or_name():
    funds = [
        {"schemeCode": None, "schemeName": "XYZ Bluechip Fund", "nav": "23.45"},
        {"schemeCode": 120503, "schemeName": None, "nav": "1040.25"},
        {"schemeCode": 119551, "schemeName": "XYZ Bluechip Fund - Direct", "nav": "23.45"},
    ]
    transport, _ = transport_for({"/fetchAllMutualFund": (200, funds)})
    provider = RapidApiProvider("key", host="nav.rapidapi.test", transport=transport)

    assert [i.scheme_code for i in await provider.lookup("bluechip")] == ["119551"]
    assert await provider.lookup("120503") == []


@pytest.mark.asyncio
async def test_health_checks():
    transport, _ = transport_for({"/mf/119551": (200, MFAPI_PAYLOAD)})
    assert await MfapiProvider("https://api.mfapi.in/mf", transport=transport).health_check() is True

    transport, _ = transport_for({})
    assert await MfapiProvider("https://api.mfapi.in/mf", transport=transport).health_check() is False


def test_build_providers_respects_order_and_configuration():
    settings = Settings(
        PROVIDER_ORDER="rapidapi, mfapi, unknown, oracle",
        RAPIDAPI_KEY="key",
        ORACLE_VM_URL=None,
        ORACLE_API_KEY=None,
    )
    providers = build_providers(settings)
    assert [p.name for p in providers] == ["rapidapi", "mfapi"]
    assert [p.priority for p in providers] == [0, 1]
