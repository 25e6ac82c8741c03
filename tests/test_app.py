"""Lifecycle tests for the bridge application."""

import asyncio
from pathlib import Path

import pytest

from rflink_mqtt.app import BridgeState, RFLinkBridgeApp
from rflink_mqtt.config import load_config
from rflink_mqtt.core.models import CommandResult, LinkStatus


class FakeEngine:
    def __init__(self) -> None:
        self.status = LinkStatus()
        self.listeners: list = []
        self.started = False
        self.stopped = False
        self.commands: list[tuple[str, str]] = []

    def add_telemetry_listener(self, listener) -> None:
        self.listeners.append(listener)

    def add_state_listener(self, listener) -> None:
        self.listeners.append(listener)

    def remove_listener(self, listener) -> None:
        if listener in self.listeners:
            self.listeners.remove(listener)

    def is_active(self) -> bool:
        return self.status.active

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    async def send_command(self, rfid: str, command: str) -> CommandResult:
        self.commands.append((rfid, command))
        return CommandResult()

    async def send_raw_command(self, text: str) -> CommandResult:
        return CommandResult()


class FakeBrokerClient:
    def __init__(self) -> None:
        self.connected = False
        self.subscriptions: list[str] = []
        self.published: list[tuple[str, bytes, bool]] = []
        self.handler = None
        self.connect_handlers: list = []
        self.disconnect_handlers: list = []

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    def publish(self, topic, payload, qos=0, retain=False) -> None:
        if not self.connected:
            raise RuntimeError("MQTT client not connected")
        self.published.append((topic, payload, retain))

    def subscribe(self, topic, qos=0) -> None:
        self.subscriptions.append(topic)

    def set_message_handler(self, handler) -> None:
        self.handler = handler

    def register_connect_handler(self, handler) -> None:
        self.connect_handlers.append(handler)

    def register_disconnect_handler(self, handler) -> None:
        self.disconnect_handlers.append(handler)

    def topics(self) -> list[str]:
        return [topic for topic, _, _ in self.published]


def make_app(tmp_path: Path):
    config_path = tmp_path / "rflink-mqtt.cfg"
    config_path.write_text(
        """
[gateway]
name = rflink-01
id = RFLINK01

[device Shutter]
class = cover
id = SHUTTER01
rfid = Brel:c3ad56:1
""".strip()
        + "\n",
        encoding="utf-8",
    )
    engine = FakeEngine()
    client = FakeBrokerClient()
    app = RFLinkBridgeApp(load_config(config_path), engine=engine, mqtt_client=client)
    return app, engine, client


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_startup_subscribes_and_publishes_discovery(tmp_path):
    app, engine, client = make_app(tmp_path)

    run_task = asyncio.create_task(app.run())
    await wait_until(lambda: app.state == BridgeState.ACTIVE)

    assert engine.started
    assert "Shutter/cmnd/CONTROL" in client.subscriptions
    assert "rflink-01/cmnd/RAW" in client.subscriptions
    assert "homeassistant/status" in client.subscriptions
    assert "homeassistant/cover/SHUTTER01/config" in client.topics()
    assert "rflink-01/tele/LWT" in client.topics()

    app.request_shutdown()
    await asyncio.wait_for(run_task, timeout=2.0)

    assert engine.stopped
    assert engine.listeners == []
    assert not client.connected


@pytest.mark.asyncio
async def test_home_assistant_restart_republishes_discovery(tmp_path):
    app, _, client = make_app(tmp_path)
    run_task = asyncio.create_task(app.run())
    await wait_until(lambda: app.state == BridgeState.ACTIVE)
    client.published.clear()

    await client.handler("homeassistant/status", b"offline")
    assert client.published == []

    await client.handler("homeassistant/status", b"online")
    assert "homeassistant/cover/SHUTTER01/config" in client.topics()

    app.request_shutdown()
    await asyncio.wait_for(run_task, timeout=2.0)


@pytest.mark.asyncio
async def test_link_state_drives_device_availability(tmp_path):
    app, engine, client = make_app(tmp_path)
    run_task = asyncio.create_task(app.run())
    await wait_until(lambda: app.state == BridgeState.ACTIVE)

    engine.status.active = True
    await app._on_link_state(engine.status)
    assert app.registry.find("Shutter").online is True

    await client.handler("Shutter/cmnd/CONTROL", b"UP")
    assert engine.commands == [("Brel:c3ad56:1", "UP")]

    app.request_shutdown()
    await asyncio.wait_for(run_task, timeout=2.0)

    assert all(device.online is False for device in app.registry)
