# Copyright © 2025-26 l5yth & contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Classification and unpacking of sensor node radio frames."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from .bme280 import CALIBRATION_BLOCK_LENGTH

CALIBRATION_FRAME_LENGTH = 44
"""Length of a frame carrying calibration data and an embedded measurement."""

MEASUREMENT_FRAME_LENGTH = 11
"""Length of a frame carrying a single measurement."""

MEASUREMENT_PAYLOAD_LENGTH = 10
"""Length of the measurement payload that follows the device identifier."""

_CALIBRATION_END = 1 + CALIBRATION_BLOCK_LENGTH


@dataclass(frozen=True)
class RawMeasurement:
    """Uncompensated ADC values of one measurement payload."""

    pressure: int
    temperature: int
    humidity: int
    battery_adc: int

    @classmethod
    def from_payload(cls, payload: bytes) -> "RawMeasurement":
        """Unpack the 10-byte measurement payload.

        Pressure and temperature are 20-bit values packed MSB first with the
        low nibble in the top half of the third byte. Humidity is big-endian,
        the battery ADC little-endian.
        """

        if len(payload) < MEASUREMENT_PAYLOAD_LENGTH:
            raise ValueError(f"measurement payload too short: {len(payload)}")
        return cls(
            pressure=_unpack_20bit(payload[0:3]),
            temperature=_unpack_20bit(payload[3:6]),
            humidity=int.from_bytes(payload[6:8], "big"),
            battery_adc=int.from_bytes(payload[8:10], "little"),
        )


@dataclass(frozen=True)
class MeasurementFrame:
    device_id: int
    measurement: RawMeasurement


@dataclass(frozen=True)
class CalibrationFrame:
    """Calibration block followed by a measurement taken by the same node."""

    device_id: int
    calibration: bytes
    measurement: RawMeasurement


@dataclass(frozen=True)
class UnrecognizedFrame:
    length: int
    raw: bytes


Frame = Union[CalibrationFrame, MeasurementFrame, UnrecognizedFrame]


def _unpack_20bit(data: bytes) -> int:
    return data[0] << 12 | data[1] << 4 | data[2] >> 4


def decode_frame(raw: bytes) -> Frame:
    """Classify ``raw`` by length and unpack its fields."""

    raw = bytes(raw)
    if len(raw) == CALIBRATION_FRAME_LENGTH:
        return CalibrationFrame(
            device_id=raw[0],
            calibration=raw[1:_CALIBRATION_END],
            measurement=RawMeasurement.from_payload(raw[_CALIBRATION_END:]),
        )
    if len(raw) == MEASUREMENT_FRAME_LENGTH:
        return MeasurementFrame(
            device_id=raw[0],
            measurement=RawMeasurement.from_payload(raw[1:]),
        )
    return UnrecognizedFrame(length=len(raw), raw=raw)


__all__ = [
    "CALIBRATION_FRAME_LENGTH",
    "MEASUREMENT_FRAME_LENGTH",
    "MEASUREMENT_PAYLOAD_LENGTH",
    "CalibrationFrame",
    "Frame",
    "MeasurementFrame",
    "RawMeasurement",
    "UnrecognizedFrame",
    "decode_frame",
]
