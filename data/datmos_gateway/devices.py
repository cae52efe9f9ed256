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

"""Device file handling: names and learned calibrations per sensor node.

The device file is a JSON object keyed by two-digit hexadecimal device
identifiers::

    {
      "0a": {
        "Name": "attic",
        "BME280": {"T1": 27504, "T2": 26435, ...}
      }
    }

Records without a ``BME280`` object only carry a display name and are not
considered calibrated.
"""

from __future__ import annotations

import json
import os
import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, replace
from pathlib import Path

from .bme280 import Coefficients

UNNAMED = "unnamed"
"""Display name used for devices without a configured name."""

_DEVICE_ID_RE = re.compile(r"[0-9a-fA-F]{2}")


class DeviceConfigError(ValueError):
    """Raised when the device file does not have the expected shape."""


def parse_device_id(text: str) -> int:
    """Return the numeric device identifier for a two-digit hex string."""

    if not isinstance(text, str) or not _DEVICE_ID_RE.fullmatch(text):
        raise DeviceConfigError(f"invalid device id: {text!r}")
    return int(text, 16)


def format_device_id(device_id: int) -> str:
    """Return the upper-case label used in logs and metric tags."""

    return f"{device_id:02X}"


def _file_key(device_id: int) -> str:
    return f"{device_id:02x}"


@dataclass(frozen=True)
class DeviceRecord:
    """Name and calibration state of a single sensor node."""

    name: str = ""
    coefficients: Coefficients | None = None

    @property
    def calibrated(self) -> bool:
        return self.coefficients is not None

    @property
    def display_name(self) -> str:
        return self.name or UNNAMED

    @classmethod
    def from_json(cls, value: object) -> "DeviceRecord":
        if not isinstance(value, Mapping):
            raise DeviceConfigError(f"device entry must be an object: {value!r}")
        name = value.get("Name", "")
        if not isinstance(name, str):
            raise DeviceConfigError(f"device name must be a string: {name!r}")
        raw_coefficients = value.get("BME280")
        if raw_coefficients is None:
            return cls(name=name)
        if not isinstance(raw_coefficients, Mapping):
            raise DeviceConfigError("BME280 entry must be an object")
        try:
            coefficients = Coefficients.from_mapping(raw_coefficients)
        except KeyError as exc:
            raise DeviceConfigError(f"missing coefficient {exc.args[0]}") from exc
        except TypeError as exc:
            raise DeviceConfigError(str(exc)) from exc
        return cls(name=name, coefficients=coefficients)

    def to_json(self) -> dict:
        entry: dict[str, object] = {"Name": self.name}
        if self.coefficients is not None:
            entry["BME280"] = self.coefficients.to_dict()
        return entry


class DeviceConfig(Mapping):
    """Mapping of device identifiers to :class:`DeviceRecord` instances.

    The whole mapping is the unit of persistence: :meth:`save` overwrites the
    device file atomically and :meth:`load` returns a new mapping. Instances
    are never mutated; :meth:`merged`, :meth:`reload` and
    :meth:`with_coefficients` return new configs.
    """

    def __init__(self, records: Mapping[int, DeviceRecord] | None = None):
        self._records: dict[int, DeviceRecord] = dict(records or {})

    def __getitem__(self, device_id: int) -> DeviceRecord:
        return self._records[device_id]

    def __iter__(self) -> Iterator[int]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __repr__(self) -> str:
        return f"DeviceConfig({self._records!r})"

    @classmethod
    def from_json(cls, document: object) -> "DeviceConfig":
        if not isinstance(document, Mapping):
            raise DeviceConfigError("device file must contain a JSON object")
        records = {}
        for key, value in document.items():
            records[parse_device_id(key)] = DeviceRecord.from_json(value)
        return cls(records)

    def to_json(self) -> dict:
        return {
            _file_key(device_id): self._records[device_id].to_json()
            for device_id in sorted(self._records)
        }

    @classmethod
    def load(cls, path: str | os.PathLike) -> "DeviceConfig":
        """Read the device file at ``path``.

        Raises:
            FileNotFoundError: When the file does not exist.
            OSError: When the file cannot be read.
            DeviceConfigError: When the content is not a valid device file.
        """

        text = Path(path).read_text(encoding="utf-8")
        try:
            document = json.loads(text)
        except json.JSONDecodeError as exc:
            raise DeviceConfigError(f"invalid JSON in {path}: {exc}") from exc
        return cls.from_json(document)

    def save(self, path: str | os.PathLike) -> None:
        """Write the device file, replacing ``path`` in a single rename."""

        target = Path(path)
        tmp_path = target.with_name(target.name + ".tmp")
        payload = json.dumps(self.to_json(), indent=2, ensure_ascii=False)
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.write("\n")
        os.replace(tmp_path, target)

    def merged(self, other: Mapping[int, DeviceRecord]) -> "DeviceConfig":
        """Return a new config where entries of ``other`` win on conflicts.

        A name-only entry of ``other`` keeps the coefficients already known
        for the same device.
        """

        records = dict(self._records)
        for device_id, incoming in other.items():
            current = records.get(device_id)
            if (
                incoming.coefficients is None
                and current is not None
                and current.coefficients is not None
            ):
                incoming = replace(incoming, coefficients=current.coefficients)
            records[device_id] = incoming
        return DeviceConfig(records)

    def reload(self, path: str | os.PathLike) -> "DeviceConfig":
        """Merge the device file into this config and persist the result.

        Entries only known in memory are kept, as are learned coefficients of
        devices the file lists without a ``BME280`` entry. When the file
        cannot be read the exception propagates and no merged config is
        produced.
        """

        merged = self.merged(DeviceConfig.load(path))
        merged.save(path)
        return merged

    def with_coefficients(
        self, device_id: int, coefficients: Coefficients
    ) -> "DeviceConfig":
        """Return a new config recording ``coefficients`` for ``device_id``."""

        record = self._records.get(device_id, DeviceRecord())
        records = dict(self._records)
        records[device_id] = replace(record, coefficients=coefficients)
        return DeviceConfig(records)

    def display_name(self, device_id: int) -> str:
        record = self._records.get(device_id)
        if record is None:
            return UNNAMED
        return record.display_name


__all__ = [
    "UNNAMED",
    "DeviceConfig",
    "DeviceConfigError",
    "DeviceRecord",
    "format_device_id",
    "parse_device_id",
]
