from __future__ import annotations

import base64
import http.client
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, cast

from safescan import __version__
from safescan.models import ReputationFailure, ReputationState, ReputationVerdict

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://www.virustotal.com/api/v3"
REPORT_LINK_TEMPLATE = "https://www.virustotal.com/gui/url/{id}"
SECURE_DETECTION_RATIO = 0.02
FLAGGING_CATEGORIES = ("malicious", "suspicious")

HTTP_FAILURES = {
    401: ReputationFailure.FORBIDDEN,
    403: ReputationFailure.FORBIDDEN,
    404: ReputationFailure.NOT_FOUND,
    429: ReputationFailure.RATE_LIMITED,
}


class ProviderError(Exception):
    def __init__(self, failure: ReputationFailure, detail: str = "") -> None:
        super().__init__(f"{failure.value}: {detail}" if detail else failure.value)
        self.failure = failure


def url_id(url: str) -> str:
    return base64.urlsafe_b64encode(url.encode("utf-8")).decode("ascii").rstrip("=")


def classify_stats(stats: dict[str, Any], source_id: str = "", report_link: str | None = None) -> ReputationVerdict:
    """Turn a provider detection-stats object into a verdict.

    All integer categories count toward the engine total; malicious and suspicious
    count as detections. A resource with no engine results yet is still pending.
    """
    counts = {k: v for k, v in stats.items() if isinstance(v, int) and not isinstance(v, bool) and v >= 0}
    total = sum(counts.values())
    flagged = sum(counts.get(k, 0) for k in FLAGGING_CATEGORIES)
    if total <= 0:
        return ReputationVerdict(
            state=ReputationState.PENDING,
            source_id=source_id,
            report_link=report_link,
        )
    return ReputationVerdict(
        state=ReputationState.COMPLETE,
        malicious_count=flagged,
        total_engines=total,
        is_secure=flagged / total < SECURE_DETECTION_RATIO,
        source_id=source_id,
        report_link=report_link,
    )


class ReputationClient:
    def __init__(
        self,
        api_key: str | None,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: int = 10,
        submit_unknown: bool = True,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.submit_unknown = submit_unknown

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict[str, str]:
        return {
            "x-apikey": self.api_key or "",
            "Accept": "application/json",
            "User-Agent": f"safescan/{__version__}",
        }

    def _request(self, req: urllib.request.Request) -> dict[str, Any]:
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                body = resp.read()
        except urllib.error.HTTPError as exc:
            failure = HTTP_FAILURES.get(exc.code, ReputationFailure.NETWORK_FAILURE)
            raise ProviderError(failure, f"HTTP {exc.code}") from exc
        except (urllib.error.URLError, http.client.HTTPException, TimeoutError, OSError) as exc:
            raise ProviderError(ReputationFailure.NETWORK_FAILURE, str(exc)) from exc
        if isinstance(body, bytes):
            body = body.decode("utf-8", errors="ignore")
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError as exc:
            raise ProviderError(ReputationFailure.NETWORK_FAILURE, "non-JSON response") from exc
        if not isinstance(parsed, dict):
            raise ProviderError(ReputationFailure.NETWORK_FAILURE, "unexpected response shape")
        return cast(dict[str, Any], parsed)

    def fetch_report(self, url: str) -> dict[str, Any]:
        req = urllib.request.Request(f"{self.base_url}/urls/{url_id(url)}", headers=self._headers())
        return self._request(req)

    def submit(self, url: str) -> str | None:
        """Ask the provider to analyze a URL it has not seen. Returns the analysis id."""
        data = urllib.parse.urlencode({"url": url}).encode("utf-8")
        headers = self._headers() | {"Content-Type": "application/x-www-form-urlencoded"}
        req = urllib.request.Request(f"{self.base_url}/urls", data=data, headers=headers, method="POST")
        payload = self._request(req)
        data = payload.get("data")
        analysis_id = data.get("id") if isinstance(data, dict) else None
        return str(analysis_id) if analysis_id else None

    def _submit_quietly(self, url: str) -> None:
        try:
            analysis_id = self.submit(url)
        except ProviderError as exc:
            logger.warning("reputation submission failed for %s: %s", url, exc)
            return
        logger.info("submitted %s for analysis (id=%s)", url, analysis_id)

    def assess(self, url: str) -> ReputationVerdict:
        if not self.api_key:
            logger.debug("reputation lookup skipped: no API credential configured")
            return ReputationVerdict.unavailable(ReputationFailure.FORBIDDEN)

        rid = url_id(url)
        try:
            payload = self.fetch_report(url)
        except ProviderError as exc:
            logger.warning("reputation lookup failed for %s: %s", url, exc)
            if exc.failure == ReputationFailure.NOT_FOUND and self.submit_unknown:
                self._submit_quietly(url)
            return ReputationVerdict.unavailable(exc.failure, source_id=rid)

        data = payload.get("data")
        attributes = data.get("attributes") if isinstance(data, dict) else None
        stats = attributes.get("last_analysis_stats") if isinstance(attributes, dict) else None
        if not isinstance(stats, dict):
            logger.info("reputation report for %s carries no detection stats", url)
            return ReputationVerdict.unavailable(ReputationFailure.NOT_FOUND, source_id=rid)

        source_id = str(data.get("id") or rid) if isinstance(data, dict) else rid
        return classify_stats(stats, source_id=source_id, report_link=REPORT_LINK_TEMPLATE.format(id=source_id))
