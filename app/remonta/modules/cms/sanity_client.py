from __future__ import annotations

import json
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any


class SanityError(RuntimeError):
    pass


@dataclass(frozen=True)
class SanityClient:
    project_id: str
    dataset: str = "production"
    api_version: str = "2024-01-01"
    token: str = ""
    timeout_seconds: int = 15

    @property
    def base_url(self) -> str:
        # Unauthenticated reads go through the CDN; tokens are only accepted by the live API.
        host = "api.sanity.io" if self.token else "apicdn.sanity.io"
        version = self.api_version if self.api_version.startswith("v") else f"v{self.api_version}"
        return f"https://{self.project_id}.{host}/{version}"

    def query(self, groq: str, params: dict[str, Any] | None = None, *, retries: int = 2) -> Any:
        """
        Run a GROQ query and return its "result". Params are bound as $name (JSON encoded).
        """
        if not self.project_id:
            raise SanityError("SANITY_PROJECT_ID is not configured.")
        qs: dict[str, str] = {"query": groq}
        for k, v in (params or {}).items():
            qs[f"${k}"] = json.dumps(v)
        url = f"{self.base_url}/data/query/{urllib.parse.quote(self.dataset)}?" + urllib.parse.urlencode(qs)

        last_err: Exception | None = None
        for attempt in range(retries + 1):
            try:
                req = urllib.request.Request(url, method="GET")
                req.add_header("Accept", "application/json")
                if self.token:
                    req.add_header("Authorization", f"Bearer {self.token}")
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    raw = resp.read().decode("utf-8")
                    data = json.loads(raw) if raw else {}
                    return data.get("result") if isinstance(data, dict) else None
            except urllib.error.HTTPError as e:
                if e.code == 429 or e.code >= 500:
                    time.sleep(min(2 * (attempt + 1), 10))
                    last_err = e
                    continue
                try:
                    detail = e.read().decode("utf-8", errors="ignore")
                except Exception:
                    detail = ""
                raise SanityError(f"HTTP {e.code} from Sanity: {detail[:300]}") from e
            except Exception as e:
                last_err = e
                time.sleep(min(1 * (attempt + 1), 5))
                continue
        raise SanityError(f"Sanity query failed after retries: {last_err}")


def client_from_config(config: dict) -> SanityClient:
    return SanityClient(
        project_id=(config.get("SANITY_PROJECT_ID") or "").strip(),
        dataset=(config.get("SANITY_DATASET") or "production").strip(),
        api_version=(config.get("SANITY_API_VERSION") or "2024-01-01").strip(),
        token=(config.get("SANITY_TOKEN") or "").strip(),
    )
