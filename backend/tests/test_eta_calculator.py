"""Tests for EtaCalculator (distance along route, straight-line fallback)."""

from factories import LNG, make_stops, north_of
from trackmate.core.eta_calculator import (
    DEFAULT_SPEED_MPS,
    EtaCalculator,
    EtaSource,
    effective_speed,
    fallback_eta_ms,
)
from trackmate.core.stop_detector import StopOnRoute, order_stops


def loaded_calculator():
    stops = order_stops(make_stops(5))
    calc = EtaCalculator()
    calc.load_route("r1", stops)
    return calc, stops


def test_basic_eta():
    calc, stops = loaded_calculator()
    lat = north_of(stops[0].lat, 100)
    remaining = [(i, stops[i]) for i in range(1, 5)]
    # 10 m/s, next stop ~456m ahead
    results = calc.calculate("r1", lat, LNG, 10, remaining, current_index=0, now_ms=5.0)

    assert [r.stop_index for r in results] == [1, 2, 3, 4]
    assert all(r.source is EtaSource.SERVER for r in results)
    assert all(r.computed_at == 5.0 for r in results)
    assert 40_000 <= results[0].eta_ms <= 50_000
    assert [r.eta_ms for r in results] == sorted(r.eta_ms for r in results)


def test_missing_speed_uses_average():
    calc, stops = loaded_calculator()
    lat = north_of(stops[0].lat, 100)
    remaining = [(1, stops[1])]
    fast = calc.calculate("r1", lat, LNG, 10, remaining, 0, 0)[0].eta_ms
    unknown = calc.calculate("r1", lat, LNG, None, remaining, 0, 0)[0].eta_ms
    stationary = calc.calculate("r1", lat, LNG, 0, remaining, 0, 0)[0].eta_ms
    assert abs(unknown - fast * 10 / DEFAULT_SPEED_MPS) < 50
    assert stationary == unknown


def test_only_remaining_stops_are_estimated():
    calc, stops = loaded_calculator()
    results = calc.calculate("r1", stops[2].lat, LNG, 8, [(3, stops[3]), (4, stops[4])], 2, 0)
    assert {r.stop_index for r in results} == {3, 4}
    assert calc.calculate("r1", stops[4].lat, LNG, 8, [], 4, 0) == []


def test_eta_never_negative():
    calc, stops = loaded_calculator()
    # Past stop 1 but it has not been confirmed yet
    lat = north_of(stops[1].lat, 30)
    results = calc.calculate("r1", lat, LNG, 8, [(1, stops[1]), (2, stops[2])], 0, 0)
    assert results[0].eta_ms == 0
    assert results[1].eta_ms > 0


def test_off_route_uses_fallback():
    calc, stops = loaded_calculator()
    # ~1km east of the route
    results = calc.calculate("r1", stops[1].lat, LNG + 0.01, 10, [(2, stops[2]), (3, stops[3])], 1, 0)
    assert all(r.source is EtaSource.FALLBACK for r in results)
    assert results[0].eta_ms > 0
    # Second stop adds the inter-stop distance (~556m at 10 m/s)
    assert 50_000 <= results[1].eta_ms - results[0].eta_ms <= 60_000


def test_unloaded_route_uses_fallback():
    calc = EtaCalculator()
    stops = order_stops(make_stops(3))
    results = calc.calculate("unknown", stops[0].lat, LNG, 5, [(1, stops[1])], 0, 0)
    assert results[0].source is EtaSource.FALLBACK
    assert not calc.is_loaded("unknown")


def test_loop_route_uses_progress_from_current_stop():
    loop = [[16.70, 81.10], [16.70, 81.11], [16.71, 81.11], [16.71, 81.10], [16.70, 81.10]]
    stops = order_stops([
        StopOnRoute("gate", "Main Gate", 16.70, 81.10, 0),
        StopOnRoute("hostel", "Hostel", 16.71, 81.11, 1),
        StopOnRoute("gate-back", "Main Gate", 16.70, 81.10, 2),
    ])
    calc = EtaCalculator()
    calc.load_route("loop", stops, geometry=loop)

    # Final leg, ~100m before returning to the gate
    results = calc.calculate("loop", 16.7009, 81.10, 10, [(2, stops[2])], 1, 0)
    assert results[0].source is EtaSource.SERVER
    assert results[0].eta_ms < 20_000


def test_fallback_eta_ms():
    lat = 16.70
    eta = fallback_eta_ms(lat, LNG, north_of(lat, 500), LNG)
    # 500m at the default 5 m/s
    assert 99_000 <= eta <= 101_000
    assert fallback_eta_ms(lat, LNG, lat, LNG, speed=10) == 0


def test_effective_speed_bounds():
    assert effective_speed(12) == 12
    assert effective_speed(None) == DEFAULT_SPEED_MPS
    assert effective_speed(0.1) == DEFAULT_SPEED_MPS
    assert effective_speed(90) == DEFAULT_SPEED_MPS
    assert effective_speed(float("nan")) == DEFAULT_SPEED_MPS
