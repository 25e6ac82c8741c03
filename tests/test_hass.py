"""Tests for Home Assistant discovery payloads."""

import json

from rflink_mqtt.core.models import LinkStatus
from rflink_mqtt.devices import Device, DeviceContext
from rflink_mqtt.hass import DiscoveryConfig, cover_configs, sensor_configs, status_sensor


class NullLink:
    async def send_command(self, rfid, command):
        raise AssertionError("no commands expected")

    async def send_raw_command(self, text):
        raise AssertionError("no commands expected")


def make_device(name="Shutter", device_id="SHUTTER01", rfid="Brel:c3ad56:1", model=""):
    context = DeviceContext(
        link=NullLink(),
        link_status=LinkStatus(model=model),
        topic_prefix="home/",
        app_version="0.3.0",
    )
    return Device(name=name, device_id=device_id, rfid=rfid, kind="cover", context=context)


def test_base_config_points_at_device_topics():
    config = DiscoveryConfig(make_device(model="RFLink Gateway V1.1 - R46"), "sensor")

    payload = json.loads(config.payload())

    assert payload["~"] == "home/Shutter/"
    assert payload["name"] == "Shutter"
    assert payload["state_topic"] == "~tele/SENSOR"
    assert payload["availability_topic"] == "~tele/LWT"
    assert payload["json_attributes_topic"] == "~tele/HASS_STATE"
    assert payload["unique_id"] == "SHUTTER01"
    assert payload["device"]["identifiers"] == ["SHUTTER01"]
    assert payload["device"]["model"] == "RFLink Gateway V1.1 - R46"
    assert payload["device"]["sw_version"] == "0.3.0"
    assert config.topic("homeassistant") == "homeassistant/sensor/SHUTTER01/config"


def test_model_falls_back_to_protocol():
    config = DiscoveryConfig(make_device(), "cover")

    assert config.config["device"]["model"] == "Brel"


def test_status_sensor_reads_message_rate():
    config = status_sensor(make_device())

    assert config.unique_id == "SHUTTER01_Status"
    assert config.config["name"] == "Shutter Status"
    assert config.config["state_topic"] == "~tele/STATE"
    assert config.config["value_template"] == "{{value_json.MsgRate}}"
    assert config.config["unit_of_measurement"] == "Msgs/h"


def test_sensor_features_become_entities():
    configs = sensor_configs(make_device("Outdoor", "TEMP01", "Cresta:8a01"), ["temp"])

    assert [config.unique_id for config in configs] == ["TEMP01_Status", "TEMP01_TEMP"]
    feature = configs[1].config
    assert feature["name"] == "Outdoor temp"
    assert feature["state_topic"] == "~tele/SENSOR"
    assert feature["value_template"] == "{{value_json.temp}}"


def test_advanced_cover_exposes_position():
    (config,) = cover_configs(make_device(), advanced=True)
    payload = config.config

    assert payload["command_topic"] == "~cmnd/CONTROL"
    assert (payload["payload_open"], payload["payload_close"], payload["payload_stop"]) == (
        "UP",
        "DOWN",
        "STOP",
    )
    assert payload["position_topic"] == "~tele/STATE"
    assert payload["set_position_topic"] == "~cmnd/POSITION"
    assert payload["position_template"] == "{{value_json.POSITION}}"
    assert (payload["position_open"], payload["position_closed"]) == (0, 100)
    assert "state_topic" not in payload
    assert "force_update" not in payload


def test_simple_cover_reports_state():
    (config,) = cover_configs(make_device(), advanced=False)
    payload = config.config

    assert payload["state_topic"] == "~tele/STATE"
    assert payload["value_template"] == "{{value_json.STATE}}"
    assert (payload["state_open"], payload["state_closed"]) == ("Open", "Closed")
    assert "position_topic" not in payload
