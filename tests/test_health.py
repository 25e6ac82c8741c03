import aiohttp
import pytest

from rflink_mqtt.core.models import LinkStatus
from rflink_mqtt.health import HealthReporter, HealthServer


class StaticLink:
    def __init__(self, status: LinkStatus) -> None:
        self.status = status

    def is_active(self) -> bool:
        return self.status.active


@pytest.mark.asyncio
async def test_health_reporter_snapshot():
    reporter = HealthReporter()

    await reporter.update("mqtt", True)
    await reporter.update("rflink", False, "opening /dev/ttyACM0")

    snapshot = await reporter.snapshot()

    assert snapshot["status"] == "degraded"
    components = {item["name"]: item for item in snapshot["components"]}
    assert components["mqtt"]["healthy"] is True
    assert components["rflink"]["healthy"] is False
    assert components["rflink"]["detail"] == "opening /dev/ttyACM0"
    assert "link" not in snapshot


@pytest.mark.asyncio
async def test_health_reporter_includes_link_counters():
    status = LinkStatus(active=True, model="RFLink Gateway V1.1 - R46", message_count=12)
    reporter = HealthReporter(StaticLink(status))
    await reporter.update("rflink", True)

    snapshot = await reporter.snapshot()

    assert snapshot["status"] == "ok"
    assert snapshot["link"]["model"] == "RFLink Gateway V1.1 - R46"
    assert snapshot["link"]["messageCount"] == 12
    assert snapshot["link"]["lastOpened"] is None


@pytest.mark.asyncio
async def test_health_server_serves_snapshot(unused_tcp_port):
    reporter = HealthReporter()
    await reporter.update("mqtt", True)

    host = "127.0.0.1"
    port = unused_tcp_port
    devices = [{"name": "Shutter", "kind": "cover", "online": True}]
    server = HealthServer(reporter, host, port, devices=lambda: devices)
    await server.start()

    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(f"http://{host}:{port}/healthz") as response:
                payload = await response.json()
                assert response.status == 200
                assert payload["status"] == "ok"

            async with session.get(f"http://{host}:{port}/devices") as response:
                payload = await response.json()
                assert payload == {"devices": devices}

            await reporter.update("rflink", False, "dead link")
            async with session.get(f"http://{host}:{port}/healthz") as response:
                assert response.status == 503
    finally:
        await server.stop()

    assert not server.running
