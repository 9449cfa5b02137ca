from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest

from data_tools import (
    get_recent_model_metrics,
    query_by_bounding_box_and_date,
    query_training_set,
    save_measurements,
    save_model_metrics,
    update_measurement,
)
from engine.errors import NotFoundError, StoreError
from factories import make_measurement


@pytest.mark.asyncio
async def test_neighbours_ordered_by_distance_then_recency(session, add_measurements):
    far, older, newer = await add_measurements(
        make_measurement(latitude=40.1, longitude=-74.0),
        make_measurement(latitude=40.0, longitude=-74.0, measurement_date=datetime(2024, 3, 1)),
        make_measurement(latitude=40.0, longitude=-74.0, measurement_date=datetime(2024, 3, 2)),
    )

    result = await query_by_bounding_box_and_date(session, 40.0, -74.0, 50)

    assert [m.id for m, _ in result] == [newer.id, older.id, far.id]
    assert result[0][1] == 0.0
    assert result[2][1] == pytest.approx(0.1 * 111.32)


@pytest.mark.asyncio
async def test_equal_distance_and_date_fall_back_to_id(session, add_measurements):
    first, second = await add_measurements(
        make_measurement(latitude=40.0, longitude=-74.0),
        make_measurement(latitude=40.0, longitude=-74.0),
    )
    result = await query_by_bounding_box_and_date(session, 40.0, -74.0, 5)
    assert [m.id for m, _ in result] == [first.id, second.id]


@pytest.mark.asyncio
async def test_radius_is_a_circle_not_the_box(session, add_measurements):
    await add_measurements(
        make_measurement(latitude=40.0, longitude=-74.0),
        # inside the bounding box corner, ~15.7 km away
        make_measurement(latitude=40.1, longitude=-73.9),
    )
    result = await query_by_bounding_box_and_date(session, 40.0, -74.0, 12)
    assert len(result) == 1


@pytest.mark.asyncio
async def test_prediction_and_pm25_filters(session, add_measurements):
    await add_measurements(
        make_measurement(),
        make_measurement(is_prediction=True, model_version="enhanced_rf_v2.0"),
        make_measurement(pm25_value=0.0),
    )

    everything = await query_by_bounding_box_and_date(session, 40.7128, -74.006, 5)
    real_valid = await query_by_bounding_box_and_date(
        session, 40.7128, -74.006, 5, include_predictions=False, valid_pm25_only=True,
    )

    assert len(everything) == 3
    assert len(real_valid) == 1


@pytest.mark.asyncio
async def test_date_window_is_inclusive(session, add_measurements):
    await add_measurements(
        make_measurement(measurement_date=datetime(2024, 3, 1)),
        make_measurement(measurement_date=datetime(2024, 3, 31, 23, 59)),
        make_measurement(measurement_date=datetime(2024, 4, 1)),
    )
    result = await query_by_bounding_box_and_date(
        session, 40.7128, -74.006, 5,
        start=datetime(2024, 3, 1), end=datetime(2024, 3, 31, 23, 59),
    )
    assert len(result) == 2


@pytest.mark.asyncio
async def test_training_set_filters_and_orders(session, add_measurements):
    older, newer, *_ = await add_measurements(
        make_measurement(measurement_date=datetime(2024, 1, 1)),
        make_measurement(measurement_date=datetime(2024, 2, 1)),
        make_measurement(is_prediction=True),
        make_measurement(pm25_value=500.0),
        make_measurement(wind_speed=50.0),
        make_measurement(humidity=None),
        make_measurement(validation_status="deleted"),
    )

    training = await query_training_set(session)
    assert [m.id for m in training] == [newer.id, older.id]

    with_deleted = await query_training_set(session, exclude_deleted=False)
    assert len(with_deleted) == 3

    limited = await query_training_set(session, limit=1)
    assert [m.id for m in limited] == [newer.id]


@pytest.mark.asyncio
async def test_update_unknown_measurement(session):
    with pytest.raises(NotFoundError):
        await update_measurement(session, 404, {"pm25_value": 1.0})


@pytest.mark.asyncio
async def test_save_measurements_skips_duplicates(session):
    item = {
        "latitude": 40.0,
        "longitude": -74.0,
        "pm25_value": 12.0,
        "measurement_date": datetime(2024, 3, 1, 10, 0),
        "data_source": "openaq",
        "is_prediction": False,
    }
    other = dict(item, measurement_date=datetime(2024, 3, 1, 11, 0))

    assert await save_measurements(session, [item, other]) == {"inserted": 2, "skipped": 0, "failed": 0}
    assert await save_measurements(session, [item]) == {"inserted": 0, "skipped": 1, "failed": 0}


@pytest.mark.asyncio
async def test_save_measurements_counts_failures(session):
    items = [
        {
            "latitude": 40.0 + i,
            "longitude": -74.0,
            "pm25_value": 12.0,
            "measurement_date": datetime(2024, 3, 1),
            "data_source": "openaq",
            "is_prediction": False,
        }
        for i in range(3)
    ]
    failing = AsyncMock(side_effect=[object(), StoreError("Failed to create measurement record"), object()])

    with patch("data_tools.insert_measurement", failing):
        counts = await save_measurements(session, items)

    assert counts == {"inserted": 2, "skipped": 0, "failed": 1}


@pytest.mark.asyncio
async def test_model_metrics_newest_first(session):
    first = await save_model_metrics(session, {"model_name": "a", "created_at": datetime(2024, 1, 1)})
    second = await save_model_metrics(session, {"model_name": "b", "created_at": datetime(2024, 2, 1)})

    recent = await get_recent_model_metrics(session, limit=10)
    assert [m.id for m in recent] == [second.id, first.id]


@pytest.mark.asyncio
async def test_limit_applies_after_ordering(session, add_measurements):
    rows = await add_measurements(*[
        make_measurement(latitude=40.0 + i * 0.01, longitude=-74.0) for i in reversed(range(6))
    ])
    nearest = sorted(rows, key=lambda m: m.latitude)[:3]

    result = await query_by_bounding_box_and_date(session, 40.0, -74.0, 50, limit=3)

    assert [m.id for m, _ in result] == [m.id for m in nearest]
    assert [round(d, 2) for _, d in result] == [0.0, 1.11, 2.23]


@pytest.mark.asyncio
async def test_same_distance_orders_newest_first_across_dst_change(session, add_measurements):
    before, after = await add_measurements(
        make_measurement(measurement_date=datetime(2024, 11, 3, 1, 15)),
        make_measurement(measurement_date=datetime(2024, 11, 3, 1, 45)),
    )
    result = await query_by_bounding_box_and_date(session, 40.7128, -74.006, 5)
    assert [m.id for m, _ in result] == [after.id, before.id]


@pytest.mark.asyncio
async def test_plausible_only_matches_scorer(session, add_measurements):
    good, *_ = await add_measurements(
        make_measurement(humidity=None),
        make_measurement(temperature=60.0),
        make_measurement(wind_speed=50.0),
        make_measurement(no2_value=0.002),
    )
    result = await query_by_bounding_box_and_date(session, 40.7128, -74.006, 5, plausible_only=True)
    assert [m.id for m, _ in result] == [good.id]
