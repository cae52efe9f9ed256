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

"""Data utilities for the datmos environmental sensor gateway.

The ``data.datmos_gateway`` package decodes BME280 readings received from
battery powered sensor nodes and forwards them to InfluxDB.
"""

VERSION = "0.3.0"
"""Semantic version identifier of the gateway."""

__version__ = VERSION
