from datetime import datetime
from unittest.mock import patch

import httpx
import numpy as np
import pytest
from sqlalchemy import select

from backend import handlers
from backend.api import get_upstream_transport
from backend.main import app
from backend.schemas import Coordinates, IngestRequest
from config import settings
from data_tools import (
    build_openaq_params,
    fetch_openaq_measurements,
    generate_synthetic_measurements,
    parse_openaq_results,
)
from db.models import Measurement
from engine.errors import UpstreamUnavailableError

OPENAQ_RESULTS = [
    {"value": 12.3, "coordinates": {"latitude": 40.71, "longitude": -74.0}, "date": {"utc": "2024-03-01T10:00:00Z"}},
    {"value": 18.0, "coordinates": {"latitude": 40.75, "longitude": -73.95}, "date": {"utc": "2024-03-01T11:00:00+00:00"}},
    # incomplete records are dropped
    {"value": None, "coordinates": {"latitude": 40.7, "longitude": -74.0}, "date": {"utc": "2024-03-01T10:00:00Z"}},
    {"value": 9.0, "coordinates": {}, "date": {"utc": "2024-03-01T10:00:00Z"}},
    {"value": 9.0, "coordinates": {"latitude": 40.7, "longitude": -74.0}},
]


def _openaq_transport(status_code=200, payload=None, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status_code, json=payload if payload is not None else {"results": OPENAQ_RESULTS})
    return httpx.MockTransport(handler)


def test_build_params_with_coordinates():
    params = build_openaq_params(
        country="US", coordinates={"latitude": 40.7, "longitude": -74.0}, radius=25, limit=5000,
    )
    assert params == {
        "parameters_id": 2,
        "order_by": "datetime",
        "sort": "desc",
        "limit": 1000,
        "countries_id": "US",
        "coordinates": "40.7,-74.0",
        "radius": 25000,
    }


def test_radius_ignored_without_coordinates():
    params = build_openaq_params(city="42", radius=10, limit=50)
    assert params["cities_id"] == "42"
    assert "radius" not in params
    assert "coordinates" not in params


def test_parse_keeps_only_complete_records():
    parsed = parse_openaq_results(OPENAQ_RESULTS)

    assert len(parsed) == 2
    assert parsed[0]["measurement_date"] == datetime(2024, 3, 1, 10, 0)
    assert parsed[0]["data_source"] == "openaq"
    assert parsed[0]["is_prediction"] is False
    assert parsed[1]["pm25_value"] == 18.0


def test_synthetic_records_are_plausible():
    now = datetime(2024, 3, 15, 12, 0)
    records = generate_synthetic_measurements(40.7, -74.0, 100, np.random.default_rng(3), now=now)

    assert len(records) == 20
    assert records[0]["measurement_date"] == now
    assert records[19]["measurement_date"] == datetime(2024, 3, 14, 17, 0)
    for record in records:
        assert record["data_source"] == "synthetic"
        assert record["pm25_value"] >= 5.0
        assert abs(record["latitude"] - 40.7) <= 0.05
        assert 0.1 <= record["aod_value"] <= 0.4
        assert 40 <= record["humidity"] <= 80


def test_synthetic_respects_small_limit():
    assert len(generate_synthetic_measurements(0, 0, 3, np.random.default_rng(0))) == 3


@pytest.mark.asyncio
async def test_fetch_sends_api_key_when_configured():
    seen = []
    with patch.object(settings, "OPENAQ_API_KEY", "secret"):
        await fetch_openaq_measurements({"parameters_id": 2}, transport=_openaq_transport(seen=seen))

    assert seen[0].headers["X-API-Key"] == "secret"
    assert seen[0].url.params["parameters_id"] == "2"


@pytest.mark.asyncio
async def test_fetch_raises_on_upstream_error():
    with pytest.raises(UpstreamUnavailableError):
        await fetch_openaq_measurements({}, transport=_openaq_transport(status_code=503))


@pytest.mark.asyncio
async def test_fetch_rejects_payload_without_results():
    with pytest.raises(UpstreamUnavailableError):
        await fetch_openaq_measurements({}, transport=_openaq_transport(payload={"meta": {}}))


@pytest.mark.asyncio
async def test_ingest_stores_openaq_records_and_skips_duplicates(session, rng):
    request = IngestRequest(country="US", limit=10)

    first = await handlers.ingest_external(session, request, rng, _openaq_transport())
    second = await handlers.ingest_external(session, request, rng, _openaq_transport())

    assert first["success"] is True
    assert first["inserted"] == 2
    assert first["total_fetched"] == 5
    assert first["valid_measurements"] == 2
    assert "countries_id=US" in first["api_url"]
    assert second["inserted"] == 0
    assert second["skipped"] == 2

    stored = (await session.execute(select(Measurement))).scalars().all()
    assert {m.data_source for m in stored} == {"openaq"}


@pytest.mark.asyncio
async def test_ingest_falls_back_to_synthetic_on_upstream_failure(session, rng):
    request = IngestRequest(coordinates=Coordinates(latitude=51.5, longitude=-0.12), limit=5)

    result = await handlers.ingest_external(session, request, rng, _openaq_transport(status_code=500))

    assert result["success"] is True
    assert result["api_url"] == "synthetic_data_generator"
    assert result["inserted"] == 5
    assert "OpenAQ API unavailable" in result["note"]

    stored = (await session.execute(select(Measurement))).scalars().all()
    assert len(stored) == 5
    assert all(m.data_source == "synthetic" for m in stored)
    assert all(abs(m.latitude - 51.5) <= 0.05 for m in stored)


@pytest.mark.asyncio
async def test_ingest_empty_results_use_default_location(session, rng):
    result = await handlers.ingest_external(
        session, IngestRequest(limit=3), rng, _openaq_transport(payload={"results": []}),
    )

    assert result["api_url"] == "synthetic_data_generator"
    stored = (await session.execute(select(Measurement))).scalars().all()
    assert all(abs(m.latitude - settings.DEFAULT_LOCATION["lat"]) <= 0.05 for m in stored)


@pytest.mark.asyncio
async def test_fetch_openaq_endpoint(client):
    app.dependency_overrides[get_upstream_transport] = lambda: _openaq_transport()

    result = (await client.post("/api/fetch-openaq", json={"city": "NYC", "limit": 50})).json()

    assert result["success"] is True
    assert result["inserted"] == 2
    assert result["failed"] == 0


@pytest.mark.asyncio
async def test_ingest_rejects_out_of_range_readings(session, rng):
    results = [
        {"value": -999.0, "coordinates": {"latitude": 40.71, "longitude": -74.0}, "date": {"utc": "2024-03-01T10:00:00Z"}},
        {"value": 812.0, "coordinates": {"latitude": 40.72, "longitude": -74.0}, "date": {"utc": "2024-03-01T10:00:00Z"}},
        {"value": 14.0, "coordinates": {"latitude": 95.0, "longitude": -74.0}, "date": {"utc": "2024-03-01T10:00:00Z"}},
        {"value": 15.0, "coordinates": {"latitude": 40.73, "longitude": -74.0}, "date": {"utc": "2024-03-01T10:00:00Z"}},
    ]

    result = await handlers.ingest_external(
        session, IngestRequest(limit=10), rng, _openaq_transport(payload={"results": results}),
    )

    assert result["success"] is True
    assert result["inserted"] == 1
    assert result["rejected"] == 3
    assert result["skipped"] == 3
    assert result["valid_measurements"] == 1

    stored = (await session.execute(select(Measurement))).scalars().all()
    assert [m.pm25_value for m in stored] == [15.0]


@pytest.mark.asyncio
async def test_ingest_with_only_invalid_readings_falls_back(session, rng):
    results = [
        {"value": -999.0, "coordinates": {"latitude": 40.71, "longitude": -74.0}, "date": {"utc": "2024-03-01T10:00:00Z"}},
    ]

    result = await handlers.ingest_external(
        session, IngestRequest(limit=4), rng, _openaq_transport(payload={"results": results}),
    )

    assert result["api_url"] == "synthetic_data_generator"
    stored = (await session.execute(select(Measurement))).scalars().all()
    assert len(stored) == 4
    assert all(0 <= m.pm25_value <= 500 for m in stored)
