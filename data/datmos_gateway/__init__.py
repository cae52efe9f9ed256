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

"""High-level API for the datmos gateway."""

from __future__ import annotations

from . import (
    bme280,
    calibration,
    config,
    daemon,
    devices,
    frames,
    handlers,
    radio,
    sink,
)

__all__: list[str] = []


def _reexport(module) -> None:
    names = getattr(module, "__all__", [])
    for name in names:
        if name.startswith("_"):
            continue
        globals()[name] = getattr(module, name)
    __all__.extend(names)


for _module in (bme280, calibration, daemon, devices, frames, handlers, radio, sink):
    _reexport(_module)

__all__ = sorted(name for name in set(__all__) if not name.startswith("_"))
