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

"""BME280 calibration decoding and compensation formulas.

The sensor nodes forward the factory trimming registers of their BME280
verbatim, together with uncompensated ADC readings. The helpers in this module
turn both into physical units using the floating point reference formulas of
the Bosch datasheet. Every function is pure: the fine temperature produced by
:func:`compensate_temperature` is handed to the humidity and pressure
formulas explicitly.
"""

from __future__ import annotations

import math
import struct
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - import only for annotations
    from .frames import RawMeasurement

CALIBRATION_BLOCK_LENGTH = 33
"""Bytes in a calibration block: 26 temperature/pressure + 7 humidity."""

_TP_BLOCK_LENGTH = 26
_TP_STRUCT = struct.Struct("<HhhHhhhhhhhh")

COEFFICIENT_NAMES: tuple[str, ...] = (
    "T1",
    "T2",
    "T3",
    "P1",
    "P2",
    "P3",
    "P4",
    "P5",
    "P6",
    "P7",
    "P8",
    "P9",
    "H1",
    "H2",
    "H3",
    "H4",
    "H5",
    "H6",
)
"""Coefficient names in register order, as stored in the device file."""

MAGNUS_BETA = 17.62
MAGNUS_LAMBDA = 243.12


@dataclass(frozen=True)
class Coefficients:
    """Factory compensation coefficients of a single BME280."""

    t1: int
    t2: int
    t3: int
    p1: int
    p2: int
    p3: int
    p4: int
    p5: int
    p6: int
    p7: int
    p8: int
    p9: int
    h1: int
    h2: int
    h3: int
    h4: int
    h5: int
    h6: int

    @classmethod
    def from_calibration_block(cls, block: bytes) -> "Coefficients":
        """Decode the 33-byte calibration block sent by a sensor node."""

        if len(block) < CALIBRATION_BLOCK_LENGTH:
            raise ValueError(
                f"calibration block too short: {len(block)} < "
                f"{CALIBRATION_BLOCK_LENGTH}"
            )
        values = decode_temperature_pressure(block[:_TP_BLOCK_LENGTH])
        values.update(
            decode_humidity(block[_TP_BLOCK_LENGTH:CALIBRATION_BLOCK_LENGTH])
        )
        return cls(**{name.lower(): values[name] for name in COEFFICIENT_NAMES})

    @classmethod
    def from_mapping(cls, values: Mapping[str, object]) -> "Coefficients":
        """Build coefficients from the ``BME280`` object of the device file.

        Raises:
            KeyError: When a coefficient is missing.
            TypeError: When a coefficient is not an integer.
        """

        kwargs = {}
        for name in COEFFICIENT_NAMES:
            value = values[name]
            if isinstance(value, bool) or not isinstance(value, int):
                raise TypeError(f"coefficient {name} must be an integer: {value!r}")
            kwargs[name.lower()] = value
        return cls(**kwargs)

    def to_dict(self) -> dict[str, int]:
        """Return the coefficients keyed by their register names."""

        return {name: getattr(self, name.lower()) for name in COEFFICIENT_NAMES}


@dataclass(frozen=True)
class Reading:
    """Compensated values for one measurement."""

    temperature: float
    humidity: float
    pressure: float
    fine_temperature: int


def decode_temperature_pressure(block: bytes) -> dict[str, int]:
    """Decode the 26-byte temperature/pressure block (registers 0x88-0xA1).

    Twelve little-endian 16-bit words hold ``T1``-``T3`` and ``P1``-``P9``;
    byte 24 is reserved and byte 25 carries ``H1``.
    """

    if len(block) < _TP_BLOCK_LENGTH:
        raise ValueError(f"temperature/pressure block too short: {len(block)}")
    words = _TP_STRUCT.unpack_from(block)
    values = dict(zip(COEFFICIENT_NAMES[:12], words))
    values["H1"] = block[25]
    return values


def decode_humidity(block: bytes) -> dict[str, int]:
    """Decode the 7-byte humidity block (registers 0xE1-0xE7).

    ``H4`` and ``H5`` are 12-bit values sharing the nibbles of byte 4.
    """

    if len(block) < 7:
        raise ValueError(f"humidity block too short: {len(block)}")
    return {
        "H2": struct.unpack_from("<h", block, 0)[0],
        "H3": block[2],
        "H4": (block[3] << 4) | (block[4] & 0x0F),
        "H5": ((block[4] & 0xF0) >> 4) | (block[5] << 4),
        "H6": struct.unpack_from("<b", block, 6)[0],
    }


def compensate_temperature(coeffs: Coefficients, adc_t: int) -> tuple[float, int]:
    """Return the temperature in °F and the fine temperature for ``adc_t``."""

    uct = float(adc_t)
    t1 = float(coeffs.t1)

    v1 = (uct / 16384.0 - t1 / 1024.0) * coeffs.t2
    v2 = ((uct / 131072.0 - t1 / 8192.0) * (uct / 131072.0 - t1 / 8192.0)) * coeffs.t3

    return c_to_f((v1 + v2) / 5120.0), int(v1 + v2)


def compensate_humidity(coeffs: Coefficients, adc_h: int, t_fine: int) -> float:
    """Return the relative humidity in percent, clamped to ``[0, 100]``."""

    uch = float(adc_h)
    h1 = float(coeffs.h1)
    h2 = float(coeffs.h2)
    h3 = float(coeffs.h3)
    h4 = float(coeffs.h4)
    h5 = float(coeffs.h5)
    h6 = float(coeffs.h6)

    h = float(t_fine) - 76800.0
    h = (uch - (h4 * 64.0 + h5 / 16384.8 * h)) * (
        h2 / 65536.0 * (1.0 + h6 / 67108864.0 * h * (1.0 + h3 / 67108864.0 * h))
    )
    h = h * (1.0 - h1 * h / 524288.0)

    if h > 100.0:
        return 100.0
    if h < 0.0:
        return 0.0
    return h


def compensate_pressure(coeffs: Coefficients, adc_p: int, t_fine: int) -> float:
    """Return the barometric pressure in hPa.

    ``0.0`` is returned when the ``P1`` term vanishes, which only happens for
    missing or corrupt coefficients.
    """

    ucp = float(adc_p)

    v1 = 0.5 * float(t_fine) - 64000.0
    v2 = v1 * v1 * coeffs.p6 / 32768.0 + v1 * coeffs.p5 * 2
    v2 = v2 / 4 + coeffs.p4 * 65536.0
    v1 = (coeffs.p3 * v1 * v1 / 524288.0 + coeffs.p2 * v1) / 524288.0
    v1 = (1.0 + v1 / 32768.0) * coeffs.p1
    if v1 == 0:
        return 0.0

    p = 1048576.0 - ucp
    p = ((p - v2 / 4096.0) * 6250.0) / v1
    v1 = coeffs.p9 * p * p / 2147483648.0
    v2 = p * coeffs.p8 / 32768.0
    return (p + (v1 + v2 + coeffs.p7) / 16.0) / 100.0


def compensate(coeffs: Coefficients, raw: "RawMeasurement") -> Reading:
    """Compensate a raw measurement, temperature first."""

    temperature, t_fine = compensate_temperature(coeffs, raw.temperature)
    return Reading(
        temperature=temperature,
        humidity=compensate_humidity(coeffs, raw.humidity, t_fine),
        pressure=compensate_pressure(coeffs, raw.pressure, t_fine),
        fine_temperature=t_fine,
    )


def c_to_f(t: float) -> float:
    return t * 1.8 + 32


def f_to_c(t: float) -> float:
    return (t - 32) / 1.8


def dew_point(t: float, rh: float) -> float:
    """Return the dew point in °F for temperature ``t`` (°F) and ``rh`` (%).

    Uses the Magnus approximation. ``rh`` must be strictly positive.
    """

    t = f_to_c(t)
    rh /= 100.0

    alpha = math.log(rh) + (MAGNUS_BETA * t) / (MAGNUS_LAMBDA + t)

    return c_to_f((MAGNUS_LAMBDA * alpha) / (MAGNUS_BETA - alpha))


__all__ = [
    "CALIBRATION_BLOCK_LENGTH",
    "COEFFICIENT_NAMES",
    "Coefficients",
    "Reading",
    "c_to_f",
    "compensate",
    "compensate_humidity",
    "compensate_pressure",
    "compensate_temperature",
    "decode_humidity",
    "decode_temperature_pressure",
    "dew_point",
    "f_to_c",
]
