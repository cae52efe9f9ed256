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

"""Shared fixtures built from the Bosch BMP280/BME280 datasheet example."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

# T1..T3, P1..P9 little-endian, reserved byte, H1.
DATASHEET_TP_BLOCK = bytes.fromhex(
    "706B" "4367" "18FC"
    "7D8E" "43D6" "D00B" "270B" "8C00" "F9FF" "8C3C" "F8C6" "7017"
    "00" "4B"
)
# H2=362, H3=0, H4=313, H5=50, H6=30.
DATASHEET_H_BLOCK = bytes.fromhex("6A01" "00" "13" "29" "03" "1E")
DATASHEET_BLOCK = DATASHEET_TP_BLOCK + DATASHEET_H_BLOCK

# adc_P=415148, adc_T=519888, adc_H=30000, battery ADC=40000.
DATASHEET_PAYLOAD = bytes.fromhex("65 59 C0 7E ED 00 75 30 40 9C")

DATASHEET_COEFFICIENTS = {
    "T1": 27504,
    "T2": 26435,
    "T3": -1000,
    "P1": 36477,
    "P2": -10685,
    "P3": 3024,
    "P4": 2855,
    "P5": 140,
    "P6": -7,
    "P7": 15500,
    "P8": -14600,
    "P9": 6000,
    "H1": 75,
    "H2": 362,
    "H3": 0,
    "H4": 313,
    "H5": 50,
    "H6": 30,
}


@pytest.fixture
def calibration_block() -> bytes:
    return DATASHEET_BLOCK


@pytest.fixture
def measurement_payload() -> bytes:
    return DATASHEET_PAYLOAD


@pytest.fixture
def coefficient_values() -> dict[str, int]:
    return dict(DATASHEET_COEFFICIENTS)


@pytest.fixture
def calibration_frame() -> bytes:
    """A 44-byte calibration frame for device ``0x01``."""

    return bytes([0x01]) + DATASHEET_BLOCK + DATASHEET_PAYLOAD


@pytest.fixture
def log_calls(monkeypatch) -> list[tuple[str, dict]]:
    """Capture every ``config._debug_log`` call as ``(message, kwargs)``."""

    from data.datmos_gateway import config

    calls: list[tuple[str, dict]] = []
    monkeypatch.setattr(
        config, "_debug_log", lambda message, **kwargs: calls.append((message, kwargs))
    )
    return calls
