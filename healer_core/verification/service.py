import logging
import re
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

from ..config import Settings
from ..exceptions import CommandTimeout, RemoteConnectionError
from ..retry import RetryPolicy, retry_async
from ..schemas.ledger import VerificationResult
from ..utils import sha256_hex

logger = logging.getLogger("healer-core.verification")

FATAL_ERROR_MARKERS = (
    "fatal error",
    "parse error",
    "call to undefined function",
    "call to undefined method",
    "cannot redeclare",
    "allowed memory size",
    "maximum execution time",
    "uncaught error",
    "uncaught exception",
    "there has been a critical error on this website",
    "error establishing a database connection",
)

MAINTENANCE_MARKERS = (
    "briefly unavailable for scheduled maintenance",
    "maintenance mode",
    "under maintenance",
    "site is temporarily unavailable",
)

WHITE_SCREEN_THRESHOLD = 100

_TITLE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)


@dataclass
class PageSnapshot:
    """What the site served at one point in time."""

    url: str
    status_code: int
    content_hash: str
    size: int
    title: Optional[str]
    elapsed: float
    markers: Dict[str, List[str]] = field(default_factory=dict)
    body: str = ""

    def as_metadata(self) -> dict:
        return {
            "url": self.url,
            "status_code": self.status_code,
            "content_hash": self.content_hash,
            "size": self.size,
            "title": self.title,
            "elapsed": round(self.elapsed, 3),
            "markers": self.markers,
        }


def find_markers(body: str) -> Dict[str, List[str]]:
    lowered = body.lower()
    return {
        "fatal": [m for m in FATAL_ERROR_MARKERS if m in lowered],
        "maintenance": [m for m in MAINTENANCE_MARKERS if m in lowered],
    }


def is_white_screen(body: str) -> bool:
    stripped = body.strip()
    if not stripped:
        return True
    lowered = stripped.lower()
    return len(stripped) < WHITE_SCREEN_THRESHOLD and "<title" not in lowered and "<body" not in lowered


class SiteVerifier:
    """
    Site Verifier.
    Responsibility: fetch the public site over HTTP and decide whether it is
    serving a healthy WordPress page.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self._settings = settings
        self._client = client

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._settings.HTTP_VERIFY_TIMEOUT,
            follow_redirects=True,
            headers={"User-Agent": self._settings.HTTP_USER_AGENT, "Cache-Control": "no-cache"},
        )

    async def capture(self, url: str) -> PageSnapshot:
        """Fetch url once. Network failures raise the engine's retryable errors."""
        client = self._client or self._new_client()
        started = time.monotonic()
        try:
            response = await client.get(url)
        except httpx.TimeoutException:
            raise CommandTimeout(f"HTTP request to {url} timed out", self._settings.HTTP_VERIFY_TIMEOUT) from None
        except httpx.HTTPError as e:
            raise RemoteConnectionError(f"HTTP request to {url} failed: {type(e).__name__}") from None
        finally:
            if self._client is None:
                await client.aclose()

        body = response.text
        title_match = _TITLE.search(body)
        return PageSnapshot(
            url=str(response.url),
            status_code=response.status_code,
            content_hash=sha256_hex(response.content),
            size=len(response.content),
            title=title_match.group(1).strip() if title_match else None,
            elapsed=time.monotonic() - started,
            markers=find_markers(body),
            body=body,
        )

    async def verify(
        self,
        url: str,
        baseline: Optional[dict] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> VerificationResult:
        """
        Run the health checks against url. baseline is the metadata of the
        BASELINE page snapshot, used to report whether the page changed.
        Transient network failures are retried; the site only counts as
        unreachable once the retry budget is spent.
        """
        policy = policy or RetryPolicy.from_settings(self._settings)
        try:
            snapshot = await retry_async(lambda: self.capture(url), policy, description=f"verification of {url}")
        except (CommandTimeout, RemoteConnectionError) as e:
            return self.unreachable(url, e)
        return self.evaluate(snapshot, baseline)

    @staticmethod
    def unreachable(url: str, error: BaseException) -> VerificationResult:
        logger.info(f"Verification of {url}: site unreachable ({error})")
        return VerificationResult(
            passed=False,
            reason=f"Site unreachable: {error}",
            details={"checks": {"reachable": False}},
        )

    @staticmethod
    def evaluate(snapshot: PageSnapshot, baseline: Optional[dict] = None) -> VerificationResult:
        checks = {
            "reachable": True,
            "http_status": snapshot.status_code < 400,
            "no_fatal_errors": not snapshot.markers["fatal"],
            "not_white_screen": not is_white_screen(snapshot.body),
            "not_maintenance": not snapshot.markers["maintenance"] and snapshot.status_code != 503,
            "has_title": snapshot.title is not None,
        }
        failed = [name for name, ok in checks.items() if not ok]
        details = {"checks": checks, "page": snapshot.as_metadata()}
        if baseline:
            details["changed_from_baseline"] = baseline.get("content_hash") != snapshot.content_hash
            details["baseline_status_code"] = baseline.get("status_code")

        if failed:
            reason = f"Site checks failed: {', '.join(failed)} (HTTP {snapshot.status_code})"
            if snapshot.markers["fatal"]:
                reason += f"; found {snapshot.markers['fatal'][0]!r}"
        else:
            reason = f"Site healthy (HTTP {snapshot.status_code})"
        logger.info(f"Verification of {snapshot.url}: {reason}")
        return VerificationResult(passed=not failed, reason=reason, details=details)
