import json

import httpx
import pytest

from infra.kafka_topics import FRAUD_ASSESSMENTS_TOPIC, TOPICS
from inspection.errors import NotConfigured, ProviderError, ProviderUnavailable
from inspection_service.detection import RoboflowDetector
from inspection_service.geocoding import ZipGeocoder
from inspection_service.history import VehicleHistoryService, VinAuditClient, normalize_history
from inspection_service.messaging import KafkaBus
from inspection_service.storage import RedisCache

VIN = "1HGCM82633A004352"

VINAUDIT_PAYLOAD = {
    "success": True,
    "year": "2003",
    "make": "Honda",
    "model": "Accord",
    "trim": "EX",
    "title": {"brands": ["Clean"], "salvage": False, "rebuilt": False, "junk": False},
    "accident": {"count": 1, "records": [{"date": "2019-06-01"}]},
    "ownership": {"count": 3, "lastDate": "2023-11-02", "type": "personal"},
    "odometer": {
        "readings": [{"mileage": 52000, "date": "2024-01-02"}, {"reading": "40000", "date": "2022-01-01"}],
        "rollback": False,
    },
    "recall": {"count": 0, "records": []},
    "marketValue": {"retail": 6500},
}


@pytest.fixture
def cache():
    return RedisCache(redis_url="redis://localhost:65535/0")


def _recording_transport(handler):
    calls = []

    def _wrapped(request):
        calls.append(request)
        return handler(request)

    return httpx.MockTransport(_wrapped), calls


# ── Damage detector ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_detector_normalizes_predictions(fixed_now):
    def handler(request):
        return httpx.Response(
            200,
            json={
                "predictions": [
                    {"class": "dent", "confidence": 0.93, "x": 10, "y": 20, "width": 100, "height": 50},
                    {"class": "scratch", "confidence": 1.7, "x": 0, "y": 0, "width": 5, "height": 5},
                    {"class": "bad", "confidence": "n/a"},
                    "garbage",
                ]
            },
        )

    transport, calls = _recording_transport(handler)
    detector = RoboflowDetector(
        api_key="rf-key", model="car-damage", version="2", transport=transport, clock=lambda: fixed_now
    )
    detection = await detector.detect("http://media.example/uploads/a.jpg")

    assert [p.label for p in detection.predictions] == ["dent", "scratch"]
    assert detection.predictions[0].area == 5000
    assert detection.predictions[1].confidence == 1.0
    assert detection.detected_at == fixed_now
    assert detection.model == "car-damage/2"
    request = calls[0]
    assert request.method == "POST"
    assert request.url.path == "/car-damage/2"
    assert request.url.params["image"] == "http://media.example/uploads/a.jpg"


@pytest.mark.asyncio
async def test_detector_failure_modes():
    def server_error(request):
        return httpx.Response(500, json={"error": "boom"})

    def unreachable(request):
        raise httpx.ConnectError("refused", request=request)

    def no_predictions(request):
        return httpx.Response(200, json={"message": "ok"})

    for handler, expected in ((server_error, ProviderError), (unreachable, ProviderUnavailable), (no_predictions, ProviderError)):
        detector = RoboflowDetector(api_key="k", model="m", transport=httpx.MockTransport(handler))
        with pytest.raises(expected):
            await detector.detect("http://x/y.jpg")

    with pytest.raises(NotConfigured):
        await RoboflowDetector(api_key="", model="m").detect("http://x/y.jpg")
    assert not RoboflowDetector(api_key="k", model="").enabled


# ── Vehicle history ─────────────────────────────────────────────────


def test_normalize_history_maps_every_section():
    record = normalize_history(VIN, VINAUDIT_PAYLOAD)
    assert record.success is True
    assert record.vehicle.year == 2003
    assert record.vehicle.make == "Honda"
    assert record.title.brands == ("Clean",)
    assert record.accidents.count == 1
    assert record.ownership.count == 3
    assert record.ownership.last_date == "2023-11-02"
    assert [r.mileage for r in record.odometer.readings] == [52000, 40000]
    assert record.odometer.last_reading.mileage == 52000
    assert record.market_value == {"retail": 6500}


def test_missing_sections_default_to_empty_shapes():
    record = normalize_history(VIN, {"success": True})
    assert record.title.brands == ()
    assert record.title.salvage is False
    assert record.accidents.count == 0
    assert record.ownership.count == 0
    assert record.odometer.readings == ()
    assert record.odometer.last_reading is None
    assert record.recalls.count == 0
    body = record.to_dict()
    assert body["odometer"]["last_reading"] is None
    assert body["title"] == {"brands": [], "salvage": False, "rebuilt": False, "junk": False}


@pytest.mark.asyncio
async def test_out_of_range_numbers_normalize_to_empty(cache):
    body = '{"success": true, "year": 1e400, "ownership": {"count": 1e400}, "odometer": {"readings": [{"mileage": -1e400}]}}'
    client = VinAuditClient(
        api_key="k", transport=httpx.MockTransport(lambda r: httpx.Response(200, text=body))
    )
    record = await client.lookup(VIN)
    assert record.vehicle.year is None
    assert record.ownership.count == 0
    assert record.odometer.readings[0].mileage is None


@pytest.mark.asyncio
async def test_history_lookup_is_cached_per_vin(cache):
    transport, calls = _recording_transport(lambda request: httpx.Response(200, json=VINAUDIT_PAYLOAD))
    client = VinAuditClient(api_key="va-key", base_url="https://vinaudit.test/v3", transport=transport)
    service = VehicleHistoryService(client=client, cache=cache, ttl_seconds=3600)

    first = await service.get(VIN)
    second = await service.get(VIN)
    assert first == second
    assert len(calls) == 1
    assert calls[0].url.params["vin"] == VIN
    assert calls[0].url.params["key"] == "va-key"
    assert calls[0].url.path == "/v3/specifications"

    await service.get(VIN, refresh=True)
    assert len(calls) == 2

    await service.invalidate(VIN)
    assert await service.cached(VIN) is None
    await service.get(VIN)
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_history_errors(cache):
    with pytest.raises(NotConfigured):
        await VinAuditClient(api_key="").lookup(VIN)

    failing = VinAuditClient(api_key="k", transport=httpx.MockTransport(lambda r: httpx.Response(503)))
    with pytest.raises(ProviderError):
        await failing.lookup(VIN)

    not_json = VinAuditClient(api_key="k", transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>")))
    with pytest.raises(ProviderError):
        await not_json.lookup(VIN)


# ── ZIP geocoder ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_geocoder_resolves_and_caches(cache):
    payload = {"post code": "10001", "places": [{"latitude": "40.7484", "longitude": "-73.9967"}]}
    transport, calls = _recording_transport(lambda request: httpx.Response(200, json=payload))
    geocoder = ZipGeocoder(cache=cache, base_url="https://zip.test/us", transport=transport)

    point = await geocoder.locate("10001-1234")
    assert point.lat == pytest.approx(40.7484)
    assert point.lng == pytest.approx(-73.9967)
    assert calls[0].url.path == "/us/10001"
    assert await geocoder.locate("10001") == point
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_geocoder_is_best_effort(cache):
    transport, calls = _recording_transport(lambda request: httpx.Response(404, json={}))
    geocoder = ZipGeocoder(cache=cache, base_url="https://zip.test/us", transport=transport)
    assert await geocoder.locate("99999") is None
    assert await geocoder.locate("abc") is None
    assert await geocoder.locate(None) is None
    assert len(calls) == 1

    disabled = ZipGeocoder(cache=cache, base_url="")
    assert await disabled.locate("10001") is None


# ── Event bus ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_bus_falls_back_to_bounded_local_queue():
    bus = KafkaBus(bootstrap_servers="localhost:65535", client_id="test", fallback_capacity=2)
    for i in range(3):
        await bus.publish(FRAUD_ASSESSMENTS_TOPIC, {"n": i}, key="k")
    assert bus.pending(FRAUD_ASSESSMENTS_TOPIC) == [{"n": 1}, {"n": 2}]
    assert bus.pending("other") == []
    assert await bus.ping() is False


def test_topics_are_declared():
    assert set(TOPICS) == {"inspection_uploads", "fraud_assessments", "manual_review_queue"}
    assert json.dumps(TOPICS)
