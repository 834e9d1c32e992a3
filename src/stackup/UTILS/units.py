# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
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

"""
Parsing of human-friendly durations ("1m30s") and memory sizes ("512m").
"""
import re
from typing import Optional, Union

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(us|ms|s|m|h)")
_DURATION_UNITS = {"us": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0}

_MEMORY_SUFFIXES = {
    'b': 1,
    'k': 1024,
    'kb': 1024,
    'm': 1024 ** 2,
    'mb': 1024 ** 2,
    'g': 1024 ** 3,
    'gb': 1024 ** 3,
    't': 1024 ** 4,
    'tb': 1024 ** 4,
}


def parse_duration(value: Union[str, int, float, None]) -> Optional[float]:
    """
    Converts a Compose-style duration to seconds.

    Numbers are taken as seconds. Strings are a sequence of ``<number><unit>``
    parts such as ``"1m30s"`` or ``"500ms"``; a bare numeric string is seconds.

    :raises ValueError: If the string is not a valid duration.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)

    text = value.strip().lower()
    try:
        return float(text)
    except ValueError:
        pass

    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position == 0 or position != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


def parse_memory(value: Union[str, int, None]) -> Optional[int]:
    """
    Parse a memory string like "512m" or "1g" to bytes.

    :return: Size in bytes, or None if the value is empty or unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, int):
        return value

    text = value.strip().lower()
    for suffix, multiplier in sorted(_MEMORY_SUFFIXES.items(), key=lambda x: -len(x[0])):
        if text.endswith(suffix):
            try:
                return int(float(text[:-len(suffix)]) * multiplier)
            except ValueError:
                return None
    try:
        return int(text)
    except ValueError:
        return None
