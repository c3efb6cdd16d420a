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

"""Reference application identity of a change-set.

Both script generators need to know which application the installer put
into Add/Remove Programs. The identity is read from the first new registry
key below an Uninstall root that carries a DisplayName.
"""

from __future__ import annotations

from dataclasses import dataclass

from pkgtrace.changeset import ChangeSet
from pkgtrace.exceptions import NoApplicationFound
from pkgtrace.parsing import is_uninstall_key
from pkgtrace.snapshot.models import RegistryEntry


@dataclass(frozen=True)
class AppIdentity:
    """Application as registered in the uninstall registry.

    Attributes:
        display_name: DisplayName value (never empty).
        version: DisplayVersion value, or "" if not recorded.
        publisher: Publisher value, or "" if not recorded.
        registry_path: Uninstall key the identity was read from.
    """

    display_name: str
    version: str = ""
    publisher: str = ""
    registry_path: str = ""

    @property
    def name_token(self) -> str:
        """First whitespace-separated token of the display name."""
        return self.display_name.split()[0]


def _text(entry: RegistryEntry, name: str) -> str:
    value = entry.values.get(name)
    return str(value).strip() if value is not None else ""


def uninstall_entries(changeset: ChangeSet) -> list[RegistryEntry]:
    """New registry keys located below an Uninstall root, in change-set order."""
    return [r for r in changeset.new_registry_keys if is_uninstall_key(r.full_path)]


def find_app_identity(changeset: ChangeSet) -> AppIdentity:
    """Derive the reference application identity.

    Prefers the first uninstall entry with DisplayName, DisplayVersion and
    Publisher; falls back to the first entry with a DisplayName.

    Raises:
        NoApplicationFound: If no uninstall entry has a non-empty DisplayName.
    """
    named = [r for r in uninstall_entries(changeset) if _text(r, "DisplayName")]
    if not named:
        raise NoApplicationFound(
            f"no uninstall registry entry with a DisplayName in change-set "
            f"for {changeset.project_name!r}"
        )
    complete = [
        r for r in named if _text(r, "DisplayVersion") and _text(r, "Publisher")
    ]
    entry = complete[0] if complete else named[0]
    return AppIdentity(
        display_name=_text(entry, "DisplayName"),
        version=_text(entry, "DisplayVersion"),
        publisher=_text(entry, "Publisher"),
        registry_path=entry.full_path,
    )
