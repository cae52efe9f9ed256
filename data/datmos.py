#!/usr/bin/env python3
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

"""Script entry point for the datmos gateway daemon."""

from __future__ import annotations

import importlib
import sys
from pathlib import Path

try:
    from .datmos_gateway import daemon as _daemon
except ImportError:
    if __package__ in {None, ""}:
        package_dir = Path(__file__).resolve().parent
        project_root = str(package_dir.parent)
        if project_root not in sys.path:
            sys.path.insert(0, project_root)
        _daemon = importlib.import_module("data.datmos_gateway.daemon")
    else:
        raise


if __name__ == "__main__":
    _daemon.main()
