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

"""Ensure version identifiers stay synchronised with the packaging metadata."""

from __future__ import annotations

import re
from pathlib import Path

import data

REPO_ROOT = Path(__file__).resolve().parents[1]


def _pyproject_version() -> str:
    contents = (REPO_ROOT / "pyproject.toml").read_text(encoding="utf-8")
    inside = False
    for line in contents.splitlines():
        stripped = line.strip()
        if stripped.startswith("["):
            inside = stripped == "[project]"
            continue
        if inside:
            literal = re.match(r"version\s*=\s*['\"](?P<version>[^'\"]+)['\"]", stripped)
            if literal:
                return literal.group("version")
    raise AssertionError("Unable to locate the project version in pyproject.toml")


def test_package_version_matches_pyproject() -> None:
    """Guard against version drift between the package and its metadata."""

    python_version = getattr(data, "__version__", None)
    assert (
        isinstance(python_version, str) and python_version
    ), "data.__version__ missing"

    assert python_version == data.VERSION == _pyproject_version()
