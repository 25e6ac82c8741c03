"""Tests for the cover motion controller."""

import asyncio
import json
from typing import Callable

import pytest

from rflink_mqtt.config import DeviceConfig
from rflink_mqtt.core.errors import CommandError, TransportError
from rflink_mqtt.core.models import CommandResult, LinkStatus, RadioFrame
from rflink_mqtt.core.utils import epoch_ms
from rflink_mqtt.devices import CoverController, Device, DeviceContext

RFID = "Brel:c3ad56:1"


class FakeClock:
    def __init__(self, now: int = 5_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class FakeLink:
    def __init__(self, clock: Callable[[], int]) -> None:
        self.clock = clock
        self.sent: list[str] = []
        self.fail: dict[str, CommandError] = {}
        self.latency = 0

    async def send_command(self, rfid: str, command: str) -> CommandResult:
        assert rfid == RFID
        self.sent.append(command)
        error = self.fail.get(command)
        if error is not None:
            raise error
        return CommandResult(sent_at_ms=self.clock(), ack_latency_ms=self.latency)

    async def send_raw_command(self, text: str) -> CommandResult:
        self.sent.append(text)
        return CommandResult()


class FakePublisher:
    def __init__(self) -> None:
        self.messages: list[tuple[str, bytes, bool]] = []

    def publish(self, topic, payload, qos=0, retain=False):
        self.messages.append((topic, payload, retain))

    def states(self) -> list[dict]:
        return [
            json.loads(payload)
            for topic, payload, _ in self.messages
            if topic.endswith("tele/STATE")
        ]


class CoverHarness:
    def __init__(self, *, open_time=1.0, close_time=1.0, clock=None) -> None:
        self.clock = clock or FakeClock()
        self.link = FakeLink(self.clock)
        self.publisher = FakePublisher()
        context = DeviceContext(
            link=self.link,
            link_status=LinkStatus(active=True),
            publisher=self.publisher,
            clock=self.clock,
        )
        self.device = Device(
            name="Shutter", device_id="SHUTTER01", rfid=RFID, kind="cover", context=context
        )
        config = DeviceConfig(
            name="Shutter",
            device_class="cover",
            id="SHUTTER01",
            rfid=RFID,
            open_time=open_time,
            close_time=close_time,
        )
        self.cover = CoverController(self.device, config)
        self.device.behavior = self.cover

    def known_at(self, position: float) -> "CoverHarness":
        self.device.set_online(True)
        self.cover.cover.position = position
        return self


async def wait_until(predicate: Callable[[], object], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def frame(command: str) -> RadioFrame:
    return RadioFrame(name="Brel", fields={"id": "c3ad56", "switch": "1", "cmd": command})


@pytest.mark.asyncio
async def test_position_is_interpolated_from_acknowledgement():
    harness = CoverHarness().known_at(0.0)
    cover = harness.cover

    await cover.move_to(100)

    assert harness.link.sent == ["DOWN"]
    assert cover.cover.moving
    assert cover.refresh_task is not None
    harness.clock.now += 500
    assert cover.current_position() == pytest.approx(50.0)

    cover.close()


@pytest.mark.asyncio
async def test_small_delta_is_ignored():
    harness = CoverHarness().known_at(50.0)

    await harness.cover.move_to(52)

    assert harness.link.sent == []
    assert harness.cover.refresh_task is None
    assert harness.cover.cover.position == 50.0


@pytest.mark.asyncio
async def test_targets_are_clamped():
    harness = CoverHarness().known_at(100.0)

    await harness.cover.move_to(250)

    assert harness.link.sent == []
    harness.cover.close()


@pytest.mark.asyncio
async def test_stop_freezes_position_at_send_time():
    harness = CoverHarness().known_at(0.0)
    cover = harness.cover

    await cover.move_to(100)
    harness.clock.now += 425
    assert await cover.stop()

    assert harness.link.sent == ["DOWN", "STOP"]
    assert not cover.cover.moving
    assert cover.refresh_task is None
    assert cover.cover.position == pytest.approx(42.5)
    assert harness.publisher.states()[-1]["POSITION"] == 45


@pytest.mark.asyncio
async def test_reversal_stops_before_moving_back():
    harness = CoverHarness().known_at(0.0)
    cover = harness.cover

    await cover.move_to(100)
    harness.clock.now += 300
    await cover.move_to(0)

    assert harness.link.sent == ["DOWN", "STOP", "UP"]
    assert cover.cover.position == pytest.approx(30.0)
    assert cover.cover.direction_ms_per_percent < 0

    cover.close()


@pytest.mark.asyncio
async def test_compatible_move_reanchors_without_new_command():
    harness = CoverHarness().known_at(0.0)
    cover = harness.cover

    await cover.move_to(100)
    harness.clock.now += 200
    await cover.move_to(60)

    assert harness.link.sent == ["DOWN"]
    assert cover.cover.start_position == pytest.approx(20.0)
    assert cover.cover.start_time_ms == harness.clock.now

    cover.close()


@pytest.mark.asyncio
async def test_failed_stop_marks_position_uncertain():
    harness = CoverHarness().known_at(0.0)
    cover = harness.cover
    await cover.move_to(100)
    harness.link.fail["STOP"] = TransportError("Link restarting")

    assert await cover.stop() is False

    assert cover.cover.position_uncertain
    assert not cover.cover.moving
    assert cover.refresh_task is None


@pytest.mark.asyncio
async def test_failed_move_marks_position_uncertain():
    harness = CoverHarness().known_at(0.0)
    harness.link.fail["DOWN"] = TransportError("Link restarting")

    await harness.cover.move_to(100)

    assert harness.cover.cover.position_uncertain
    assert not harness.cover.cover.moving


@pytest.mark.asyncio
async def test_offline_target_is_deferred_until_initialized():
    harness = CoverHarness()
    cover = harness.cover

    await cover.move_to(30)

    assert harness.link.sent == []
    assert cover.cover.deferred_target == 30

    harness.device.set_online(True)
    await cover.initialize()

    # unknown position: recalibrate towards the closer end stop first
    assert harness.link.sent == ["DOWN"]
    assert cover.cover.recalibration_target == 30
    assert cover.cover.deferred_target is None

    cover.close()


@pytest.mark.asyncio
async def test_recalibration_only_updates_target_while_running():
    harness = CoverHarness()
    cover = harness.cover
    harness.device.set_online(True)
    await cover.initialize()

    await cover.move_to(70)
    await cover.move_to(20)

    assert harness.link.sent == ["UP"]
    assert cover.cover.recalibration_target == 20

    cover.close()


@pytest.mark.asyncio
async def test_recalibration_completes_then_moves_to_target():
    harness = CoverHarness(open_time=0.05, close_time=0.05)
    cover = harness.cover
    harness.device.set_online(True)
    await cover.initialize()

    await cover.move_to(70)
    await wait_until(lambda: "DOWN" in harness.link.sent)

    assert harness.link.sent[:2] == ["UP", "DOWN"]
    assert not cover.cover.position_uncertain
    assert not cover.cover.recalibrating

    cover.close()


@pytest.mark.asyncio
async def test_deferred_move_reaches_target_end_to_end():
    harness = CoverHarness(open_time=0.2, close_time=0.2, clock=epoch_ms)
    cover = harness.cover

    await cover.move_to(30)
    harness.device.set_online(True)
    await cover.initialize()
    await wait_until(lambda: harness.link.sent[-1:] == ["STOP"])

    assert harness.link.sent == ["DOWN", "UP", "STOP"]
    assert 15 <= cover.cover.position <= 32
    assert cover.refresh_task is None


@pytest.mark.asyncio
async def test_recalibration_failure_leaves_position_uncertain():
    harness = CoverHarness()
    cover = harness.cover
    harness.device.set_online(True)
    await cover.initialize()
    harness.link.fail["DOWN"] = TransportError("Link restarting")

    await cover.move_to(10)

    assert cover.cover.position_uncertain
    assert not cover.cover.recalibrating


@pytest.mark.asyncio
async def test_remote_control_is_tracked_without_transmitting():
    harness = CoverHarness().known_at(0.0)
    cover = harness.cover

    await cover.on_telemetry(frame("DOWN"))
    assert cover.cover.moving
    harness.clock.now += 250
    await cover.on_telemetry(frame("STOP"))

    assert harness.link.sent == []
    assert cover.cover.position == pytest.approx(25.0)
    assert cover.refresh_task is None


@pytest.mark.asyncio
async def test_remote_control_during_recalibration_makes_position_uncertain():
    harness = CoverHarness()
    cover = harness.cover
    harness.device.set_online(True)
    await cover.initialize()
    await cover.move_to(30)

    await cover.on_telemetry(frame("UP"))

    assert not cover.cover.recalibrating
    assert cover.cover.position_uncertain
    assert harness.link.sent == ["DOWN"]


@pytest.mark.asyncio
async def test_mqtt_commands_drive_the_cover():
    harness = CoverHarness().known_at(50.0)
    cover = harness.cover

    await cover.on_command("CONTROL", "down")
    assert harness.link.sent == ["DOWN"]
    await cover.on_command("CONTROL", "STOP")
    assert harness.link.sent == ["DOWN", "STOP"]
    await cover.on_command("POSITION", "not-a-number")
    assert harness.link.sent == ["DOWN", "STOP"]
    await cover.on_command("POSITION", "10")
    assert harness.link.sent == ["DOWN", "STOP", "UP"]

    cover.close()


@pytest.mark.asyncio
async def test_reset_recalibrates_to_current_position():
    harness = CoverHarness().known_at(80.0)
    cover = harness.cover

    await cover.on_command("RESET", "")

    assert harness.link.sent == ["UP"]
    assert cover.cover.recalibration_target == 80.0

    cover.close()


@pytest.mark.asyncio
async def test_simple_mode_reports_open_and_closed():
    harness = CoverHarness(open_time=0, close_time=0)
    cover = harness.cover
    harness.device.set_online(True)

    assert cover.commands == ("CONTROL",)
    assert harness.publisher.states() == []

    await cover.on_command("CONTROL", "UP")
    assert harness.link.sent == ["UP"]
    assert harness.publisher.states()[-1]["STATE"] == "Open"

    await cover.on_telemetry(frame("DOWN"))
    assert harness.link.sent == ["UP"]
    assert harness.publisher.states()[-1]["STATE"] == "Closed"


class SlowLink(FakeLink):
    """Link whose acknowledgements take a while to arrive."""

    delay = 0.05

    async def send_command(self, rfid: str, command: str) -> CommandResult:
        await asyncio.sleep(self.delay)
        return await super().send_command(rfid, command)


def slow_harness(**kwargs) -> CoverHarness:
    harness = CoverHarness(**kwargs)
    harness.link = SlowLink(harness.clock)
    harness.device.context.link = harness.link
    return harness


def stop_timer_seconds(cover: CoverController) -> float:
    assert cover._stop_handle is not None
    return cover._stop_handle.when() - asyncio.get_running_loop().time()


@pytest.mark.asyncio
async def test_end_stop_targets_run_longer():
    harness = CoverHarness().known_at(0.0)
    cover = harness.cover

    await cover.move_to(100)
    assert stop_timer_seconds(cover) == pytest.approx(1.1, abs=0.05)
    cover.close()

    harness = CoverHarness().known_at(0.0)
    cover = harness.cover

    await cover.move_to(60)
    assert stop_timer_seconds(cover) == pytest.approx(0.6, abs=0.05)
    cover.close()


@pytest.mark.asyncio
async def test_acknowledgement_latency_shortens_stop_timer():
    harness = CoverHarness().known_at(0.0)
    harness.link.latency = 200
    cover = harness.cover

    await cover.move_to(60)

    assert stop_timer_seconds(cover) == pytest.approx(0.4, abs=0.05)
    cover.close()


@pytest.mark.asyncio
async def test_repeated_target_at_rest_sends_nothing():
    harness = CoverHarness().known_at(40.0)
    cover = harness.cover

    await cover.move_to(40)
    await cover.move_to(40)

    assert harness.link.sent == []
    assert cover.refresh_task is None


@pytest.mark.asyncio
async def test_repeated_target_after_completed_move_sends_nothing():
    harness = CoverHarness(open_time=0.1, close_time=0.1).known_at(0.0)
    cover = harness.cover

    await cover.move_to(60)
    harness.clock.now += 60
    await wait_until(lambda: not cover.cover.moving)
    assert harness.link.sent == ["DOWN", "STOP"]

    await cover.move_to(60)
    await cover.move_to(60)

    assert harness.link.sent == ["DOWN", "STOP"]
    assert cover.cover.position == pytest.approx(60.0)
    assert cover.refresh_task is None


@pytest.mark.asyncio
async def test_request_during_unacknowledged_move_extends_it():
    harness = slow_harness(open_time=10, close_time=10).known_at(0.0)
    cover = harness.cover

    await asyncio.gather(cover.move_to(20), cover.move_to(80))

    assert harness.link.sent == ["DOWN"]
    assert stop_timer_seconds(cover) > 7.0
    cover.close()


@pytest.mark.asyncio
async def test_request_during_unacknowledged_stop_moves_afterwards():
    harness = slow_harness(open_time=10, close_time=10).known_at(0.0)
    cover = harness.cover
    await cover.move_to(80)

    await asyncio.gather(cover.stop(), cover.move_to(30))

    assert harness.link.sent == ["DOWN", "STOP", "DOWN"]
    assert cover.cover.moving
    assert stop_timer_seconds(cover) == pytest.approx(3.0, abs=0.2)
    cover.close()


@pytest.mark.asyncio
async def test_stale_stop_timer_does_not_stop_a_newer_move():
    harness = CoverHarness(open_time=0.05, close_time=0.05).known_at(0.0)
    cover = harness.cover

    await cover.move_to(60)
    # timer fires while the cover is re-targeted before the stop runs
    cover._stop_handle.cancel()
    cover._on_stop_timer(False)
    await cover.move_to(90)
    await asyncio.sleep(0)

    assert harness.link.sent == ["DOWN"]
    assert cover.cover.moving
    cover.close()
