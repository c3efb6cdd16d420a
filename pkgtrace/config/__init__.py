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

"""Configuration loading and management for PkgTrace.

This module loads and merges YAML project files with a layered approach:

  - Built-in defaults
  - Organization-wide defaults (defaults/org.yaml)
  - Project configuration (projects/<name>.yaml)

The loader performs deep merging where dicts are merged recursively and
lists/scalars are replaced (last wins). Relative paths are resolved against
the project file location for relocatability.

Example:
    Basic usage:
        ```python
        from pathlib import Path
        from pkgtrace.config import load_effective_config

        config = load_effective_config(Path("projects/contoso.yaml"))
        print(config["project"]["name"])  # "Contoso App"
        ```
"""

from .loader import DEFAULT_CONFIG, load_effective_config

__all__ = ["DEFAULT_CONFIG", "load_effective_config"]
