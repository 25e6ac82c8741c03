"""Tests for the RFLink line codec."""

from rflink_mqtt import codec


def test_split_frame_extracts_envelope():
    frame = codec.split_frame("20;2D;Brel;ID=c3ad56;SWITCH=1;CMD=UP;")

    assert frame is not None
    assert frame.node == "20"
    assert frame.packet_index == 0x2D
    assert frame.fields == ["Brel", "ID=c3ad56", "SWITCH=1", "CMD=UP", ""]
    assert frame.first_token == "Brel"


def test_split_frame_rejects_short_lines():
    assert codec.split_frame("20;2D") is None
    assert codec.split_frame("garbage") is None


def test_split_frame_rejects_bad_packet_index():
    assert codec.split_frame("20;XYZ;OK;") is None


def test_first_token_uses_key_of_first_field():
    frame = codec.split_frame("20;01;VER=1.1;REV=46;BUILD=0c;")

    assert frame is not None
    assert frame.first_token == "VER"


def test_decompose_lowercases_keys_and_numbers_bare_tokens():
    fields = codec.decompose(["ID=c3ad56", "TEMP=00c0", "ALPHA", "", "BETA"])

    assert fields == {
        "id": "c3ad56",
        "temp": "00c0",
        "unknown1": "ALPHA",
        "unknown2": "BETA",
    }


def test_decompose_keeps_values_with_equal_signs():
    assert codec.decompose(["RAW=a=b"]) == {"raw": "a=b"}


def test_parse_banner_model_strips_vendor_prefix():
    banner = "Nodo RadioFrequencyLink - RFLink Gateway V1.1 - R46"

    assert codec.parse_banner_model(banner) == "RFLink Gateway V1.1 - R46"


def test_parse_banner_model_keeps_short_banners():
    assert codec.parse_banner_model("X - abc") == "X - abc"


def test_encode_command_frames_parts():
    assert codec.encode_command("PING") == "10;PING;"
    assert codec.encode_command("RTSRECCLEAN=3") == "10;RTSRECCLEAN=3;"


def test_encode_device_command_splits_rfid():
    assert codec.encode_device_command("Brel:c3ad56:1", "UP") == "10;Brel;c3ad56;1;UP;"
    assert codec.encode_device_command("NewKaku:00abcd", "ON") == "10;NewKaku;00abcd;ON;"


def test_is_unacknowledged_only_for_reboot():
    assert codec.is_unacknowledged("10;REBOOT;")
    assert codec.is_unacknowledged("reboot")
    assert not codec.is_unacknowledged("10;VERSION;")
    assert not codec.is_unacknowledged("10;Brel;c3ad56;1;UP;")
