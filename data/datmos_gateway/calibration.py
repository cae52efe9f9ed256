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

"""In-memory calibration state for every sensor node heard so far."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

from . import config
from .bme280 import Coefficients
from .devices import DeviceRecord, format_device_id


@dataclass
class CalibrationStore:
    """Decoded coefficients and last fine temperature keyed by device id.

    The store is owned by the gateway loop and never shared between threads.
    """

    coefficients: dict[int, Coefficients] = field(default_factory=dict)
    fine_temperatures: dict[int, int] = field(default_factory=dict)

    def apply(self, device_id: int, block: bytes) -> Coefficients:
        """Decode ``block`` and store the coefficients for ``device_id``.

        Parameters:
            device_id: Identifier of the node that sent the block.
            block: The 33-byte calibration block of a calibration frame.

        Returns:
            The decoded coefficients, which replace any previous entry.
        """

        decoded = Coefficients.from_calibration_block(block)
        self.coefficients[device_id] = decoded
        return decoded

    def get(self, device_id: int) -> Coefficients | None:
        return self.coefficients.get(device_id)

    def is_calibrated(self, device_id: int) -> bool:
        return device_id in self.coefficients

    def record_fine_temperature(self, device_id: int, t_fine: int) -> None:
        self.fine_temperatures[device_id] = t_fine

    def fine_temperature(self, device_id: int) -> int | None:
        return self.fine_temperatures.get(device_id)

    def seed(self, records: Mapping[int, DeviceRecord]) -> int:
        """Copy the coefficients of calibrated ``records`` into the store.

        Returns:
            Number of devices whose coefficients were loaded.
        """

        seeded = 0
        for device_id, record in records.items():
            if record.coefficients is None:
                continue
            self.coefficients[device_id] = record.coefficients
            seeded += 1
            config._debug_log(
                "Loaded device calibration",
                context="calibration.seed",
                device_id=format_device_id(device_id),
                name=record.display_name,
            )
        return seeded


__all__ = ["CalibrationStore"]
