from datetime import date

import pytest

from services.identifiers import normalize_identifier
from services.returns_service import ReturnsService, percent_return, trailing_returns, value_at_or_before, years_before


def test_years_before_handles_leap_day():
    assert years_before(date(2025, 11, 17), 1) == date(2024, 11, 17)
    assert years_before(date(2024, 2, 29), 1) == date(2023, 2, 28)


def test_value_at_or_before():
    history = [(date(2024, 1, 1), 10.0), (date(2024, 6, 1), 12.0)]
    assert value_at_or_before(history, date(2023, 12, 31)) is None
    assert value_at_or_before(history, date(2024, 1, 1)) == 10.0
    assert value_at_or_before(history, date(2024, 5, 31)) == 10.0
    assert value_at_or_before(history, date(2025, 1, 1)) == 12.0


def test_percent_return():
    assert percent_return(20.0, 23.45) == pytest.approx(17.25)
    assert percent_return(None, 23.45) is None
    assert percent_return(0.0, 23.45) is None


def test_trailing_returns_relative_to_latest_row():
    history = [
        (date(2020, 11, 16), 10.0),
        (date(2022, 11, 17), 15.0),
        (date(2024, 11, 15), 20.0),
        (date(2025, 11, 17), 23.45),
    ]
    returns = trailing_returns(history)
    assert returns["return_1y"] == pytest.approx(17.25)
    assert returns["return_3y"] == pytest.approx(56.3333, abs=1e-4)
    assert returns["return_5y"] == pytest.approx(134.5)


def test_trailing_returns_with_short_history():
    returns = trailing_returns([(date(2025, 11, 17), 23.45)])
    assert returns == {"return_1y": None, "return_3y": None, "return_5y": None}
    assert trailing_returns([]) == {"return_1y": None, "return_3y": None, "return_5y": None}


@pytest.mark.asyncio
async def test_recompute_writes_returns(store, fund_factory):
    await store.upsert_instruments([fund_factory()])
    await store.upsert_values([
        {"scheme_code": "119551", "value": 20.0, "value_date": date(2024, 11, 15)},
        {"scheme_code": "119551", "value": 23.45, "value_date": date(2025, 11, 17)},
    ])

    updated = await ReturnsService(store, chunk_size=1).recompute(["119551", "119551", "000000"])

    assert updated == 1
    record = await store.find(normalize_identifier("119551"))
    assert record["return_1y"] == pytest.approx(17.25)
    assert record["return_3y"] is None
