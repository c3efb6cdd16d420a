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

"""Uninstall-string and product-code parsing.

Installers record how to remove them in free-text registry values such as
UninstallString and QuietUninstallString. This module turns those strings
into tagged UninstallCandidate values so both script generators share one
parser and one precedence policy.

Candidate Precedence (per registry entry, at most one candidate):

1. QuietUninstallString pointing at an executable (EXE)
2. UninstallString pointing at an executable (EXE)
3. An uninstall string invoking msiexec with a product code (MSI)

Installers that expose a silent wrapper next to a generic uninstaller list
both; the silent one wins because generated scripts run unattended.

Example:
    Parse an uninstall string:
        ```python
        from pkgtrace.parsing import classify_uninstall_string

        candidate = classify_uninstall_string(
            '"C:\\\\Program Files\\\\Contoso\\\\uninst.exe" /S'
        )
        print(candidate.kind, candidate.command, candidate.arguments)
        # EXE C:\\Program Files\\Contoso\\uninst.exe /S
        ```
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
import re
from typing import Any, Literal

CandidateKind = Literal["MSI", "EXE"]

# Bracketed 36-character GUID, e.g. {AAAAAAAA-BBBB-CCCC-DDDD-EEEEEEEEEEEE}
PRODUCT_CODE_PATTERN = re.compile(
    r"\{[0-9A-Fa-f]{8}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{12}\}"
)

_MSIEXEC_TOKEN = re.compile(r"msiexec", re.IGNORECASE)
_QUOTED_COMMAND = re.compile(r'^\s*"(?P<command>[^"]+)"\s*(?P<arguments>.*)$')
_BARE_EXE_COMMAND = re.compile(
    r"^\s*(?P<command>.+?\.exe)(?=\s|$)\s*(?P<arguments>.*)$", re.IGNORECASE
)

UNINSTALL_VALUE_NAMES = ("QuietUninstallString", "UninstallString")

_UNINSTALL_KEY_MARKER = "\\microsoft\\windows\\currentversion\\uninstall\\"


@dataclass(frozen=True)
class UninstallCandidate:
    """One way of uninstalling an application.

    Attributes:
        kind: "MSI" (native msiexec by product code) or "EXE" (run a command).
        product_code: MSI product code, for MSI candidates.
        command: Executable path, for EXE candidates.
        arguments: Argument string passed to ``command``.
        source: Where the candidate came from (value name or "RegistryPath").
        registry_path: Registry key the candidate was read from.
    """

    kind: CandidateKind
    product_code: str | None = None
    command: str | None = None
    arguments: str = ""
    source: str = ""
    registry_path: str = ""


def extract_product_codes(*texts: str | None) -> list[str]:
    """Extract bracketed MSI product codes from free text.

    Codes are upper-cased and de-duplicated, keeping first-seen order.

    Example:
        ```python
        extract_product_codes("MsiExec.exe /X{aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee}")
        # Returns: ["{AAAAAAAA-BBBB-CCCC-DDDD-EEEEEEEEEEEE}"]
        ```
    """
    codes: list[str] = []
    for text in texts:
        if not text:
            continue
        for match in PRODUCT_CODE_PATTERN.finditer(str(text)):
            code = match.group(0).upper()
            if code not in codes:
                codes.append(code)
    return codes


def is_uninstall_key(path: str) -> bool:
    """True if ``path`` is a key below an Uninstall root (any hive/view)."""
    return _UNINSTALL_KEY_MARKER in path.casefold()


def is_msi_invocation(uninstall_string: str) -> bool:
    return bool(_MSIEXEC_TOKEN.search(uninstall_string))


def split_command(command_line: str) -> tuple[str, str]:
    """Split a command line into (executable, arguments).

    Handles the quoted form (``"C:\\Path With Spaces\\u.exe" /S``), the
    unquoted form whose path contains spaces but ends in ``.exe``, and a
    bare first token.

    Example:
        ```python
        split_command('"C:\\\\App Dir\\\\u.exe" /S /quiet')
        # Returns: ("C:\\\\App Dir\\\\u.exe", "/S /quiet")
        split_command("C:\\\\Program Files\\\\App\\\\u.exe /S")
        # Returns: ("C:\\\\Program Files\\\\App\\\\u.exe", "/S")
        ```
    """
    text = command_line.strip()
    for pattern in (_QUOTED_COMMAND, _BARE_EXE_COMMAND):
        match = pattern.match(text)
        if match:
            return match.group("command").strip(), match.group("arguments").strip()
    command, _, arguments = text.partition(" ")
    return command, arguments.strip()


def classify_uninstall_string(
    uninstall_string: str | None,
    source: str = "UninstallString",
    registry_path: str = "",
) -> UninstallCandidate | None:
    """Turn one uninstall string into a tagged candidate.

    Args:
        uninstall_string: Raw registry value.
        source: Registry value name the string came from.
        registry_path: Registry key the string came from.

    Returns:
        An MSI candidate when the string invokes msiexec with a product
        code, an EXE candidate otherwise, or None for empty strings and
        msiexec strings without a product code.
    """
    if not uninstall_string or not str(uninstall_string).strip():
        return None
    text = str(uninstall_string)
    if is_msi_invocation(text):
        codes = extract_product_codes(text)
        if not codes:
            return None
        return UninstallCandidate(
            kind="MSI",
            product_code=codes[0],
            source=source,
            registry_path=registry_path,
        )
    command, arguments = split_command(text)
    if not command:
        return None
    return UninstallCandidate(
        kind="EXE",
        command=command,
        arguments=arguments,
        source=source,
        registry_path=registry_path,
    )


def select_uninstall_candidate(
    values: Mapping[str, Any], registry_path: str = ""
) -> UninstallCandidate | None:
    """Pick the preferred uninstall candidate of one registry entry.

    Precedence: EXE QuietUninstallString > EXE UninstallString > MSI.

    Args:
        values: Registry values of the entry.
        registry_path: Path of the entry (recorded on the candidate).

    Returns:
        The preferred candidate, or None if the entry has no usable
        uninstall string.
    """
    candidates = [
        classify_uninstall_string(values.get(name), name, registry_path)
        for name in UNINSTALL_VALUE_NAMES
    ]
    usable = [c for c in candidates if c is not None]
    for kind in ("EXE", "MSI"):
        for candidate in usable:
            if candidate.kind == kind:
                return candidate
    return None


def collect_product_codes(entries: Iterable[tuple[str, Mapping[str, Any]]]) -> list[str]:
    """Collect product codes from uninstall-key paths and uninstall strings.

    Args:
        entries: (registry path, values) pairs.

    Returns:
        Ordered, de-duplicated, upper-cased product codes.
    """
    texts: list[str | None] = []
    for path, values in entries:
        texts.append(path)
        for name in UNINSTALL_VALUE_NAMES:
            value = values.get(name)
            texts.append(str(value) if value else None)
    return extract_product_codes(*texts)
