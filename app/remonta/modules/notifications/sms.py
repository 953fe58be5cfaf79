from __future__ import annotations

import base64
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


class SmsError(RuntimeError):
    pass


@dataclass(frozen=True)
class TwilioClient:
    account_sid: str
    auth_token: str
    from_number: str
    base_url: str = "https://api.twilio.com/2010-04-01"
    timeout_seconds: int = 15

    def _auth_header(self) -> str:
        token = f"{self.account_sid}:{self.auth_token}".encode("utf-8")
        return "Basic " + base64.b64encode(token).decode("ascii")

    def send_sms(self, to: str, body: str) -> dict[str, Any]:
        url = f"{self.base_url}/Accounts/{urllib.parse.quote(self.account_sid)}/Messages.json"
        payload = urllib.parse.urlencode({"To": to, "From": self.from_number, "Body": body}).encode("utf-8")
        req = urllib.request.Request(url, data=payload, method="POST")
        req.add_header("Authorization", self._auth_header())
        req.add_header("Content-Type", "application/x-www-form-urlencoded")
        req.add_header("Accept", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                return json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            try:
                detail = e.read().decode("utf-8", errors="ignore")
            except Exception:
                detail = ""
            raise SmsError(f"HTTP {e.code} from Twilio: {detail[:300]}") from e
        except (urllib.error.URLError, OSError, ValueError) as e:
            raise SmsError(f"Twilio request failed: {e}") from e


def client_from_config(config: dict) -> TwilioClient | None:
    sid = config.get("TWILIO_ACCOUNT_SID") or ""
    token = config.get("TWILIO_AUTH_TOKEN") or ""
    number = config.get("TWILIO_PHONE_NUMBER") or ""
    if not (sid and token and number):
        return None
    return TwilioClient(account_sid=sid, auth_token=token, from_number=number)


def send_sms(config: dict, to: str, body: str) -> None:
    client = client_from_config(config)
    if client is None:
        raise SmsError("SMS provider is not configured.")
    result = client.send_sms(to, body)
    logger.info("SMS sent to %s (sid=%s)", to[:-3] + "***", result.get("sid"))
