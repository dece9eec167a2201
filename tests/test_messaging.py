import asyncio

import pytest

from service.messaging import (
    VEHICLE_AGGREGATES_TOPIC,
    VEHICLE_REBUILD_REQUESTS_TOPIC,
    VIO_AUDIT_TOPIC,
    KafkaBus,
)


@pytest.fixture
def kafka():
    # never connected, so every event lands in the local queues
    return KafkaBus(bootstrap_servers="127.0.0.1:1", client_id="test")


# ── Publish Tests ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_domain_events_queue_locally(kafka):
    assert kafka.connected is False
    assert await kafka.ping() is False

    await kafka.publish_audit({"action": "VIO_GENERATED", "meta": {"vehicleId": "veh-1"}})
    await kafka.publish_aggregate("veh-1", "success", {"trustIndex": 80})
    await kafka.request_rebuild("veh-1", plate="34ABC123")

    assert kafka.pending(VIO_AUDIT_TOPIC) == 1
    assert kafka.pending(VEHICLE_AGGREGATES_TOPIC) == 1
    assert kafka.pending(VEHICLE_REBUILD_REQUESTS_TOPIC) == 1


@pytest.mark.asyncio
async def test_local_queue_is_bounded_and_keeps_newest():
    bus = KafkaBus(bootstrap_servers="127.0.0.1:1", client_id="test", local_queue_size=2)
    for vid in ("veh-1", "veh-2", "veh-3"):
        await bus.request_rebuild(vid)
    assert bus.pending(VEHICLE_REBUILD_REQUESTS_TOPIC) == 2

    seen = []
    stop = asyncio.Event()

    async def handler(event):
        seen.append(event["vehicleId"])
        if len(seen) == 2:
            stop.set()

    await asyncio.wait_for(bus.consume_rebuild_requests_forever(handler, stop), timeout=5)
    assert seen == ["veh-2", "veh-3"]


# ── Consumer Tests ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_rebuild_consumer_survives_handler_errors(kafka):
    stop = asyncio.Event()
    handled = []

    async def handler(event):
        if event["vehicleId"] == "bad":
            raise RuntimeError("boom")
        handled.append(event["vehicleId"])
        if len(handled) == 2:
            stop.set()

    for vid in ("veh-1", "bad", "veh-2"):
        await kafka.request_rebuild(vid)

    await asyncio.wait_for(kafka.consume_rebuild_requests_forever(handler, stop), timeout=5)
    assert handled == ["veh-1", "veh-2"]
    assert kafka.pending(VEHICLE_REBUILD_REQUESTS_TOPIC) == 0
