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

"""Frame handlers that compensate sensor readings into metric points."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from . import bme280, config
from .calibration import CalibrationStore
from .devices import DeviceConfig, format_device_id
from .frames import (
    CalibrationFrame,
    MeasurementFrame,
    RawMeasurement,
    UnrecognizedFrame,
    decode_frame,
)
from .radio import LinkQuality
from .sink import MetricPoint

VREF = 1.5
"""Reference voltage of the node's battery ADC in volts."""

R1 = 300e3
R2 = 180e3
VDIV = R2 / (R1 + R2)
"""Ratio of the battery voltage divider feeding the ADC."""

ADC_FULL_SCALE = 1023
ADC_ALIGNMENT = 64
"""The 10-bit conversion is left-aligned in the transmitted 16-bit word."""


@dataclass
class GatewayState:
    """Device names and calibrations owned by the gateway loop."""

    devices: DeviceConfig = field(default_factory=DeviceConfig)
    calibration: CalibrationStore = field(default_factory=CalibrationStore)
    measure: str = config.DEFAULT_MEASURE

    @classmethod
    def from_devices(
        cls, devices: DeviceConfig, *, measure: str = config.DEFAULT_MEASURE
    ) -> "GatewayState":
        state = cls(devices=devices, measure=measure)
        state.calibration.seed(devices)
        return state

    def apply_reload(self, devices: DeviceConfig) -> None:
        """Adopt a reloaded device config and refresh the calibrations."""

        self.devices = devices
        self.calibration.seed(devices)


def battery_voltage(adc: int) -> float:
    """Convert the raw battery ADC word into volts."""

    return float(adc) * VREF / ADC_FULL_SCALE / VDIV / ADC_ALIGNMENT


def build_point(
    state: GatewayState,
    device_id: int,
    reading: bme280.Reading,
    raw: RawMeasurement,
    quality: LinkQuality,
    received_at: datetime,
) -> MetricPoint:
    """Assemble the metric point for one compensated measurement."""

    fields: dict[str, float] = {
        "temperature": reading.temperature,
        "humidity": reading.humidity,
        "pressure": reading.pressure,
        "rssi": float(quality.rssi),
        "snr": float(quality.snr),
        "fei": float(quality.fei),
        "vbat": battery_voltage(raw.battery_adc),
    }
    if reading.humidity > 0:
        fields["dewpoint"] = bme280.dew_point(reading.temperature, reading.humidity)
    return MetricPoint(
        measurement=state.measure,
        tags={
            "id": format_device_id(device_id),
            "name": state.devices.display_name(device_id),
        },
        fields=fields,
        timestamp=received_at,
    )


def _apply_calibration(state: GatewayState, frame: CalibrationFrame) -> None:
    config._debug_log(
        "Calibrating device",
        context="handlers.calibration",
        severity="info",
        device_id=format_device_id(frame.device_id),
    )
    coefficients = state.calibration.apply(frame.device_id, frame.calibration)
    state.devices = state.devices.with_coefficients(frame.device_id, coefficients)


def handle_measurement(
    state: GatewayState,
    device_id: int,
    raw: RawMeasurement,
    *,
    link_quality: Callable[[], LinkQuality],
    received_at: datetime,
) -> MetricPoint | None:
    """Compensate ``raw`` for ``device_id``.

    Returns:
        The metric point, or ``None`` when the device is not calibrated.
    """

    coefficients = state.calibration.get(device_id)
    if coefficients is None:
        config._debug_log(
            "Device not calibrated",
            context="handlers.measurement",
            severity="warn",
            device_id=format_device_id(device_id),
        )
        return None

    reading = bme280.compensate(coefficients, raw)
    state.calibration.record_fine_temperature(device_id, reading.fine_temperature)
    point = build_point(
        state, device_id, reading, raw, link_quality(), received_at
    )
    config._debug_log(
        "Compensated measurement",
        context="handlers.measurement",
        device_id=point.tags["id"],
        name=point.tags["name"],
        temperature=round(reading.temperature, 1),
        humidity=round(reading.humidity, 1),
        pressure=round(reading.pressure, 1),
        vbat=round(point.fields["vbat"], 3),
    )
    return point


def handle_frame(
    state: GatewayState,
    packet: bytes,
    *,
    link_quality: Callable[[], LinkQuality],
    received_at: datetime | None = None,
) -> MetricPoint | None:
    """Decode ``packet`` and return the metric point it produces, if any.

    Calibration frames update both the calibration store and the device
    config before their embedded measurement is compensated.
    """

    if received_at is None:
        received_at = datetime.now(timezone.utc)

    frame = decode_frame(packet)
    if isinstance(frame, UnrecognizedFrame):
        config._debug_log(
            "Unhandled frame length",
            context="handlers.frame",
            severity="warn",
            length=frame.length,
            packet=frame.raw.hex().upper(),
        )
        return None
    if isinstance(frame, CalibrationFrame):
        _apply_calibration(state, frame)
    elif not isinstance(frame, MeasurementFrame):  # pragma: no cover
        raise TypeError(f"unexpected frame type: {type(frame).__name__}")

    return handle_measurement(
        state,
        frame.device_id,
        frame.measurement,
        link_quality=link_quality,
        received_at=received_at,
    )


__all__ = [
    "ADC_ALIGNMENT",
    "ADC_FULL_SCALE",
    "GatewayState",
    "R1",
    "R2",
    "VDIV",
    "VREF",
    "battery_voltage",
    "build_point",
    "handle_frame",
    "handle_measurement",
]
