"""Line codec for the RFLink serial protocol.

Inbound frames look like ``20;2D;Brel;ID=c3ad56;SWITCH=1;CMD=UP;`` where the
first element names the node and the second is a hexadecimal packet index.
Outbound commands are framed as ``10;<PART>;<PART>;...;``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

COMMAND_NODE = "10"
SYSTEM_NODE = "11"
DATA_NODE = "20"

_UNACKNOWLEDGED_COMMANDS = frozenset({"REBOOT"})
_BANNER_PREFIX = re.compile(r"^[^-]*-")


@dataclass(slots=True, frozen=True)
class RawFrame:
    """A frame split into its envelope and remaining fields."""

    node: str
    packet_index: int
    fields: List[str]

    @property
    def first_token(self) -> str:
        """Key (or bare value) of the first field, used for reply classification."""

        if not self.fields:
            return ""
        return self.fields[0].split("=", 1)[0]


def split_frame(line: str) -> Optional[RawFrame]:
    """Split a received line, returning ``None`` for malformed frames."""

    elements = line.split(";")
    if len(elements) < 3:
        return None

    node = elements[0][-2:]
    try:
        packet_index = int(elements[1], 16)
    except ValueError:
        return None

    return RawFrame(node=node, packet_index=packet_index, fields=elements[2:])


def decompose(elements: Iterable[str]) -> Dict[str, str]:
    """Decode ``KEY=VALUE`` fields into a dict keyed by lower-cased names.

    Bare tokens are kept under ``unknown1``, ``unknown2``, ... in the order
    they appear. Empty elements (such as the one after the trailing ``;``)
    are skipped.
    """

    result: Dict[str, str] = {}
    unknown = 0
    for element in elements:
        if not element:
            continue
        name, separator, value = element.partition("=")
        if separator:
            result[name.lower()] = value
        else:
            unknown += 1
            result[f"unknown{unknown}"] = element
    return result


def parse_banner_model(field: str) -> str:
    """Extract the model name from the startup banner.

    ``Nodo RadioFrequencyLink - RFLink Gateway V1.1 - R46`` yields
    ``RFLink Gateway V1.1 - R46``. Short remainders fall back to the full text.
    """

    model = _BANNER_PREFIX.sub("", field, count=1).strip()
    if len(model) < 6:
        return field
    return model


def encode_command(*parts: str) -> str:
    """Frame a structured command, e.g. ``encode_command("PING") == "10;PING;"``."""

    return ";".join([COMMAND_NODE, *parts]) + ";"


def encode_device_command(rfid: str, command: str) -> str:
    """Frame a command addressed to a device identified as ``protocol:id[:switch]``."""

    return encode_command(*rfid.split(":"), command)


def is_unacknowledged(text: str) -> bool:
    """Whether the transceiver never answers this command line."""

    parts = [part for part in text.strip().split(";") if part]
    if parts and parts[0] == COMMAND_NODE:
        parts = parts[1:]
    return bool(parts) and parts[0].upper() in _UNACKNOWLEDGED_COMMANDS
