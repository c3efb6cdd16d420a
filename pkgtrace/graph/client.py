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

"""Read-only Microsoft Graph client for Intune policy export.

Only the calls needed to back up device policies are modeled: listing
device compliance policies and device configuration profiles, and reading
the assignments of each. Collections are paged through @odata.nextLink.

Example:
    Export all policies:
        ```python
        from pathlib import Path
        from pkgtrace.graph import CredentialManager, GraphClient

        client = GraphClient(CredentialManager().get_token)
        result = client.export_policies(Path("output/policies"))
        print(f"Exported {result.policy_count} policies")
        ```
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
import json
from pathlib import Path
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from pkgtrace import __version__
from pkgtrace.detection import sanitize_filename
from pkgtrace.exceptions import NetworkError
from pkgtrace.logging import Logger, get_global_logger
from pkgtrace.results import ExportResult

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

# Export folder name -> Graph collection path
POLICY_COLLECTIONS = {
    "compliance": "deviceManagement/deviceCompliancePolicies",
    "configuration": "deviceManagement/deviceConfigurations",
}

TokenProvider = Callable[[], str]


def make_session() -> requests.Session:
    """
    Create a requests.Session with sane retry/backoff defaults.

    - Retries on common transient status codes, including Graph throttling (429).
    - Applies exponential backoff and honors Retry-After.
    - Sets a helpful User-Agent.
    """
    s = requests.Session()
    retries = Retry(
        total=5,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=("GET",),
        respect_retry_after_header=True,
        raise_on_status=False,
    )
    s.headers.update(
        {
            "User-Agent": f"pkgtrace/{__version__}",
            "Accept": "application/json",
        }
    )
    s.mount("http://", HTTPAdapter(max_retries=retries))
    s.mount("https://", HTTPAdapter(max_retries=retries))
    return s


class GraphClient:
    """Minimal Graph client bound to a token provider.

    Args:
        token_provider: Returns a valid bearer token (e.g.,
            CredentialManager.get_token).
        session: HTTP session. Defaults to make_session().
        base_url: Graph endpoint root.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        session: requests.Session | None = None,
        base_url: str = GRAPH_BASE_URL,
        timeout: int = 30,
    ) -> None:
        self._token_provider = token_provider
        self._session = session or make_session()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _url(self, path: str) -> str:
        if path.startswith("https://") or path.startswith("http://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def get_json(self, path: str) -> dict[str, Any]:
        """GET a Graph resource and return its JSON body.

        Raises:
            NetworkError: On connection errors, HTTP errors, or non-JSON bodies.
        """
        url = self._url(path)
        headers = {"Authorization": f"Bearer {self._token_provider()}"}
        try:
            response = self._session.get(url, headers=headers, timeout=self.timeout)
        except requests.RequestException as err:
            raise NetworkError(f"GET {url} failed: {err}") from err
        if response.status_code >= 400:
            raise NetworkError(f"GET {url} failed (HTTP {response.status_code})")
        try:
            return response.json()
        except ValueError as err:
            raise NetworkError(f"GET {url} returned invalid JSON") from err

    def get_paged(self, path: str) -> Iterator[dict[str, Any]]:
        """Yield every item of a Graph collection, following @odata.nextLink."""
        next_url: str | None = path
        while next_url:
            page = self.get_json(next_url)
            yield from page.get("value", [])
            next_url = page.get("@odata.nextLink")

    def list_compliance_policies(self) -> list[dict[str, Any]]:
        return list(self.get_paged(POLICY_COLLECTIONS["compliance"]))

    def list_configuration_profiles(self) -> list[dict[str, Any]]:
        return list(self.get_paged(POLICY_COLLECTIONS["configuration"]))

    def list_assignments(self, collection: str, policy_id: str) -> list[dict[str, Any]]:
        return list(self.get_paged(f"{collection}/{policy_id}/assignments"))

    def export_policies(
        self, output_dir: Path, logger: Logger | None = None
    ) -> ExportResult:
        """Write every compliance policy and configuration profile to JSON.

        Each policy is saved as ``<output_dir>/<kind>/<name>-<id>.json`` with
        its assignments embedded under "assignments".

        Raises:
            NetworkError: If a Graph request fails.
            OSError: If a file cannot be written.
        """
        if logger is None:
            logger = get_global_logger()

        files: list[Path] = []
        for kind, collection in POLICY_COLLECTIONS.items():
            policies = list(self.get_paged(collection))
            logger.verbose("GRAPH", f"Found {len(policies)} {kind} policies")
            folder = output_dir / kind
            folder.mkdir(parents=True, exist_ok=True)
            for policy in policies:
                policy_id = str(policy.get("id") or "")
                if not policy_id:
                    logger.warning("GRAPH", f"Skipping {kind} policy without id")
                    continue
                document = dict(policy)
                document["assignments"] = self.list_assignments(collection, policy_id)
                name = sanitize_filename(str(policy.get("displayName") or ""), "policy")
                path = folder / f"{name}-{policy_id}.json"
                with open(path, "w", encoding="utf-8") as f:
                    json.dump(document, f, indent=2, ensure_ascii=False)
                    f.write("\n")
                logger.debug("GRAPH", f"Exported {path}")
                files.append(path)

        return ExportResult(output_dir=output_dir, files=files)
