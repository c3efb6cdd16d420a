# Copyright 2025 Roger Cibrian
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

"""Dotted version parsing and the minimum-version requirement check.

Detection scripts compare the installed DisplayVersion against the version
captured at trace time. The comparison is numeric per component, padded
with zeros, and fails open: if either side cannot be parsed, the
requirement counts as met. Existence is never failed open, only version.

This module mirrors the Compare-Version function emitted into detection
scripts so the same rule can be evaluated (and tested) from Python.

Example:
    ```python
    from pkgtrace.versioning import version_requirement_met

    version_requirement_met("2.1.0", "2.0.5")  # True
    version_requirement_met("1.9", "2.0")      # False
    version_requirement_met("abc", "2.0")      # True (fail-open)
    ```
"""

from __future__ import annotations

import re

_NUM_SEP = re.compile(r"[._-]")


def _ints_from_text(text: str) -> tuple[int, ...]:
    """Parse numeric components only.
    Raises ValueError if any non-numeric token is encountered to avoid
    silently mapping "1.2a" -> (1,2,0).
    """
    parts = [p for p in _NUM_SEP.split(text.strip()) if p]
    nums: list[int] = []
    for p in parts:
        if not p.isdigit():
            raise ValueError(f"non-numeric version component {p!r} in {text!r}")
        nums.append(int(p))
    if not nums:
        raise ValueError(f"empty version string {text!r}")
    return tuple(nums)


def _pad_equal(
    a: tuple[int, ...], b: tuple[int, ...]
) -> tuple[tuple[int, ...], tuple[int, ...]]:
    """Pad tuples with zeros so they align for element-wise comparison."""
    n = max(len(a), len(b))
    return a + (0,) * (n - len(a)), b + (0,) * (n - len(b))


def parse_version(text: str) -> tuple[int, ...]:
    """Parse a dotted version string into an integer tuple.

    Raises:
        ValueError: If the string is empty or has a non-numeric component.
    """
    return _ints_from_text(text)


def version_requirement_met(installed: str | None, required: str | None) -> bool:
    """Return True if ``installed`` >= ``required``.

    A missing required version means there is nothing to check. A missing
    or unparseable version on either side is treated as met (fail-open).
    """
    if not required or not installed:
        return True
    try:
        a, b = _pad_equal(parse_version(installed), parse_version(required))
    except ValueError:
        return True
    return a >= b
