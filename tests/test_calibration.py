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
"""Unit tests for :mod:`data.datmos_gateway.calibration`."""

from __future__ import annotations

import pytest

from data.datmos_gateway import bme280
from data.datmos_gateway.calibration import CalibrationStore
from data.datmos_gateway.devices import DeviceConfig, DeviceRecord


def test_apply_stores_decoded_coefficients(calibration_block, coefficient_values):
    store = CalibrationStore()

    assert store.get(1) is None
    assert store.is_calibrated(1) is False

    decoded = store.apply(1, calibration_block)

    assert decoded.to_dict() == coefficient_values
    assert store.get(1) == decoded
    assert store.is_calibrated(1) is True


def test_apply_overwrites_previous_calibration(calibration_block):
    store = CalibrationStore()
    store.apply(1, calibration_block)
    altered = bytearray(calibration_block)
    altered[0:2] = (1000).to_bytes(2, "little")

    store.apply(1, bytes(altered))

    assert store.get(1).t1 == 1000


def test_apply_rejects_truncated_block(calibration_block):
    store = CalibrationStore()

    with pytest.raises(ValueError):
        store.apply(1, calibration_block[:20])

    assert store.get(1) is None


def test_fine_temperature_is_tracked_per_device():
    store = CalibrationStore()

    store.record_fine_temperature(1, 128422)
    store.record_fine_temperature(2, -5)

    assert store.fine_temperature(1) == 128422
    assert store.fine_temperature(2) == -5
    assert store.fine_temperature(3) is None


def test_seed_loads_only_calibrated_records(coefficient_values, log_calls):
    coeffs = bme280.Coefficients.from_mapping(coefficient_values)
    store = CalibrationStore()
    store.coefficients[9] = coeffs
    devices = DeviceConfig(
        {1: DeviceRecord(name="a", coefficients=coeffs), 2: DeviceRecord(name="b")}
    )

    assert store.seed(devices) == 1

    assert store.get(1) == coeffs
    assert store.get(2) is None
    assert store.get(9) == coeffs
    assert [message for message, _ in log_calls] == ["Loaded device calibration"]
