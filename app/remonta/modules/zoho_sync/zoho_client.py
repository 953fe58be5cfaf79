from __future__ import annotations

import json
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

OAUTH_SCOPES = "ZohoCRM.modules.ALL,ZohoCRM.settings.modules.ALL,ZohoCRM.settings.fields.ALL"
# Refresh access tokens this long before Zoho says they expire.
TOKEN_REFRESH_MARGIN_SECONDS = 300

# Access tokens shared by every client built from the same credentials (clients are cheap, built per request).
_tokens: dict[tuple[str, str], tuple[str, float]] = {}
_tokens_lock = threading.Lock()


class ZohoError(RuntimeError):
    pass


class ZohoRateLimited(ZohoError):
    pass


class ZohoNotConfigured(ZohoError):
    pass


def clear_token_cache() -> None:
    with _tokens_lock:
        _tokens.clear()


@dataclass(frozen=True)
class ZohoClient:
    client_id: str
    client_secret: str
    refresh_token: str
    accounts_url: str = "https://accounts.zoho.com.au"
    api_url: str = "https://www.zohoapis.com.au/crm/v2"
    redirect_uri: str = ""
    timeout_seconds: int = 30

    # --- OAuth ---

    def _post_token(self, params: dict[str, str]) -> dict[str, Any]:
        url = self.accounts_url.rstrip("/") + "/oauth/v2/token?" + urllib.parse.urlencode(params)
        req = urllib.request.Request(url, data=b"", method="POST")
        req.add_header("Accept", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                data = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            raise ZohoError(f"HTTP {e.code} from Zoho accounts") from e
        except (urllib.error.URLError, OSError, ValueError) as e:
            raise ZohoError(f"Zoho token request failed: {e}") from e
        if not isinstance(data, dict) or data.get("error") or not data.get("access_token"):
            raise ZohoError(f"Zoho token request rejected: {(data or {}).get('error', 'no access_token')}")
        return data

    def access_token(self) -> str:
        if not (self.client_id and self.client_secret and self.refresh_token):
            raise ZohoNotConfigured("Zoho credentials are not configured (ZOHO_CLIENT_ID/SECRET/REFRESH_TOKEN).")
        cache_key = (self.client_id, self.refresh_token)
        with _tokens_lock:
            cached = _tokens.get(cache_key)
            if cached and cached[1] > time.time():
                return cached[0]
        data = self._post_token(
            {
                "refresh_token": self.refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
            }
        )
        expires_in = int(data.get("expires_in") or 3600)
        token = str(data["access_token"])
        with _tokens_lock:
            _tokens[cache_key] = (token, time.time() + max(expires_in - TOKEN_REFRESH_MARGIN_SECONDS, 60))
        return token

    def authorization_url(self) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "scope": OAUTH_SCOPES,
            "redirect_uri": self.redirect_uri,
            "access_type": "offline",
            "prompt": "consent",
        }
        return self.accounts_url.rstrip("/") + "/oauth/v2/auth?" + urllib.parse.urlencode(params)

    def exchange_code(self, code: str) -> dict[str, Any]:
        """One-time setup: trade an authorization code for a refresh token."""
        return self._post_token(
            {
                "grant_type": "authorization_code",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
                "code": code,
            }
        )

    # --- REST ---

    def _open(self, method: str, path: str, *, params: dict[str, Any] | None, body: Any, retries: int):
        url = self.api_url.rstrip("/") + path
        if params:
            url += "?" + urllib.parse.urlencode({k: v for k, v in params.items() if v is not None})
        data = json.dumps(body).encode("utf-8") if body is not None else None

        last_err: Exception | None = None
        for attempt in range(retries + 1):
            try:
                req = urllib.request.Request(url, data=data, method=method)
                req.add_header("Authorization", f"Zoho-oauthtoken {self.access_token()}")
                req.add_header("Accept", "application/json")
                if data is not None:
                    req.add_header("Content-Type", "application/json")
                resp = urllib.request.urlopen(req, timeout=self.timeout_seconds)
                return resp
            except urllib.error.HTTPError as e:
                if e.code == 429:
                    # rate limit; brief backoff
                    time.sleep(min(2 * (attempt + 1), 10))
                    last_err = ZohoRateLimited("Rate limited (429)")
                    continue
                if e.code == 401 and attempt == 0:
                    # Token revoked or expired early: drop it and retry once with a fresh one.
                    clear_token_cache()
                    last_err = e
                    continue
                if e.code in (204, 404):
                    return None
                try:
                    detail = e.read().decode("utf-8", errors="ignore")
                except Exception:
                    detail = ""
                raise ZohoError(f"HTTP {e.code} from Zoho ({path}): {detail[:300]}") from e
            except ZohoError:
                raise
            except Exception as e:
                last_err = e
                time.sleep(min(1 * (attempt + 1), 5))
                continue
        raise ZohoError(f"Zoho request failed after retries ({path}): {last_err}")

    def request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: Any = None,
        retries: int = 3,
    ) -> dict[str, Any]:
        resp = self._open(method, path, params=params, body=body, retries=retries)
        if resp is None:
            return {}
        with resp:
            raw = resp.read()
        if not raw:
            return {}  # Zoho answers 204 with an empty body when nothing matches
        try:
            j = json.loads(raw.decode("utf-8"))
        except Exception as e:
            raise ZohoError(f"Invalid JSON from Zoho ({path})") from e
        return j if isinstance(j, dict) else {}

    def list_records(self, module: str, *, per_page: int = 200, max_pages: int = 50, **params: Any) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        page = 1
        while page <= max_pages:
            j = self.request_json(
                "GET", f"/{urllib.parse.quote(module)}", params={"page": page, "per_page": per_page, **params}
            )
            rows = j.get("data") or []
            if isinstance(rows, list):
                out.extend(r for r in rows if isinstance(r, dict))
            if not (j.get("info") or {}).get("more_records"):
                break
            page += 1
        return out

    def get_record(self, module: str, record_id: str) -> dict[str, Any] | None:
        j = self.request_json("GET", f"/{urllib.parse.quote(module)}/{urllib.parse.quote(str(record_id))}")
        rows = j.get("data") or []
        return rows[0] if rows and isinstance(rows[0], dict) else None

    def search_records(self, module: str, criteria: str, *, per_page: int = 200, max_pages: int = 50) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        page = 1
        while page <= max_pages:
            j = self.request_json(
                "GET",
                f"/{urllib.parse.quote(module)}/search",
                params={"criteria": criteria, "page": page, "per_page": per_page},
            )
            rows = j.get("data") or []
            out.extend(r for r in rows if isinstance(r, dict))
            if not (j.get("info") or {}).get("more_records"):
                break
            page += 1
        return out

    def get_leads_by_stage(self, stage: str) -> list[dict[str, Any]]:
        return self.search_records("Leads", f"(Lead_Status:equals:{stage})")

    def create_record(self, module: str, record: dict[str, Any]) -> dict[str, Any]:
        """Returns the created record's details ({"id": ...}). Raises ZohoError when Zoho rejects it."""
        j = self.request_json("POST", f"/{urllib.parse.quote(module)}", body={"data": [record]}, retries=0)
        rows = j.get("data") or []
        first = rows[0] if rows and isinstance(rows[0], dict) else {}
        if first.get("status") != "success":
            raise ZohoError(f"Zoho rejected {module} record: {first.get('message') or first.get('code') or 'unknown error'}")
        return first.get("details") or {}

    def get_modules(self) -> list[dict[str, Any]]:
        j = self.request_json("GET", "/settings/modules")
        return j.get("modules") or []

    def get_fields(self, module: str) -> list[dict[str, Any]]:
        j = self.request_json("GET", "/settings/fields", params={"module": module})
        return j.get("fields") or []

    def download_photo(self, module: str, record_id: str) -> bytes | None:
        resp = self._open(
            "GET", f"/{urllib.parse.quote(module)}/{urllib.parse.quote(str(record_id))}/photo", params=None, body=None, retries=2
        )
        if resp is None:
            return None
        with resp:
            data = resp.read()
        return data or None


def client_from_config(config: dict) -> ZohoClient:
    return ZohoClient(
        client_id=(config.get("ZOHO_CLIENT_ID") or "").strip(),
        client_secret=(config.get("ZOHO_CLIENT_SECRET") or "").strip(),
        refresh_token=(config.get("ZOHO_REFRESH_TOKEN") or "").strip(),
        accounts_url=(config.get("ZOHO_ACCOUNTS_URL") or "https://accounts.zoho.com.au").strip(),
        api_url=(config.get("ZOHO_CRM_API_URL") or "https://www.zohoapis.com.au/crm/v2").strip(),
        redirect_uri=(config.get("ZOHO_REDIRECT_URI") or "").strip(),
    )


def zoho_configured(config: dict) -> bool:
    return bool(config.get("ZOHO_CLIENT_ID") and config.get("ZOHO_CLIENT_SECRET") and config.get("ZOHO_REFRESH_TOKEN"))
