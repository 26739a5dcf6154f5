"""Authentication state for the batchexecute client.

Holds the cookie jar, anti-forgery (CSRF) token, session id and optional
bearer token, caches them on disk, and refreshes them when the service
rejects a call. The browser login that produces the initial cookies lives
outside this package: tokens arrive through the cache file, environment
variables or the ``save_auth_tokens`` server tool.
"""

import json
import logging
import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path

import httpx

from . import constants
from .exceptions import AuthExpiredError

logger = logging.getLogger("notebooklm_rpc.auth")


@dataclass(frozen=True)
class AuthTokens:
    """Authentication tokens for NotebookLM.

    Only cookies are required. The CSRF token, session ID and build label
    can be re-extracted from the NotebookLM page when needed.
    """
    cookies: dict[str, str] = field(default_factory=dict)
    csrf_token: str = ""  # Optional - auto-extracted from page
    session_id: str = ""  # Optional - auto-extracted from page
    bearer_token: str = ""
    build_label: str = ""
    extracted_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "cookies": self.cookies,
            "csrf_token": self.csrf_token,
            "session_id": self.session_id,
            "bearer_token": self.bearer_token,
            "build_label": self.build_label,
            "extracted_at": self.extracted_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AuthTokens":
        return cls(
            cookies=dict(data["cookies"]),
            csrf_token=data.get("csrf_token", ""),  # May be empty
            session_id=data.get("session_id", ""),  # May be empty
            bearer_token=data.get("bearer_token", ""),
            build_label=data.get("build_label", ""),
            extracted_at=data.get("extracted_at", 0),
        )

    def is_expired(self, max_age_hours: float = 168) -> bool:
        """Check if cookies are older than max_age_hours.

        Default is 168 hours (1 week) since cookies are stable for weeks.
        The CSRF token/session ID will be auto-refreshed regardless.
        """
        age_seconds = time.time() - self.extracted_at
        return age_seconds > (max_age_hours * 3600)

    @property
    def cookie_header(self) -> str:
        """Get cookies as a header string."""
        return "; ".join(f"{k}={v}" for k, v in self.cookies.items())


def get_cache_path() -> Path:
    """Get the path to the auth cache file."""
    cache_dir = Path.home() / ".notebooklm-rpc"
    cache_dir.mkdir(exist_ok=True)
    return cache_dir / "auth.json"


def load_cached_tokens(path: Path | None = None) -> AuthTokens | None:
    """Load tokens from cache if they exist.

    Tokens are not rejected based on age. The functional check (redirect to
    login during a token refresh) is the real validity test.
    """
    cache_path = path or get_cache_path()
    if not cache_path.exists():
        return None

    try:
        with open(cache_path) as f:
            data = json.load(f)
        tokens = AuthTokens.from_dict(data)

        if tokens.is_expired():
            logger.info("Cached tokens are older than 1 week. They may still work.")

        return tokens
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        logger.warning("Failed to load cached tokens from %s: %s", cache_path, e)
        return None


def save_tokens_to_cache(tokens: AuthTokens, path: Path | None = None) -> Path:
    """Save tokens to cache and return the file they were written to."""
    cache_path = path or get_cache_path()
    with open(cache_path, "w") as f:
        json.dump(tokens.to_dict(), f, indent=2)
    logger.debug("Auth tokens cached to %s", cache_path)
    return cache_path


def extract_csrf_from_page_source(html: str) -> str | None:
    """Extract CSRF token from page HTML.

    The token is stored in WIZ_global_data.SNlM0e or similar structures.
    """
    patterns = [
        r'"SNlM0e":"([^"]+)"',  # WIZ_global_data.SNlM0e
        r'at=([^&"]+)',  # Direct at= value
    ]

    for pattern in patterns:
        match = re.search(pattern, html)
        if match:
            return match.group(1)

    return None


def extract_session_id_from_page(html: str) -> str | None:
    """Extract session ID from page HTML."""
    patterns = [
        r'"FdrFJe":"([^"]+)"',
        r'f\.sid=(\d+)',
    ]

    for pattern in patterns:
        match = re.search(pattern, html)
        if match:
            return match.group(1)

    return None


def extract_build_label_from_page(html: str) -> str | None:
    """Extract the frontend build label (cfb2h) sent as the ``bl`` query parameter."""
    match = re.search(r'"cfb2h":"([^"]+)"', html)
    return match.group(1) if match else None


def parse_cookie_header(cookie_header: str) -> dict[str, str]:
    """
    Parse a copy-pasted Cookie header value into a dict.

    Usage:
    1. Go to notebooklm.google.com in Chrome
    2. Open DevTools > Network tab
    3. Copy the Cookie header of any request to notebooklm.google.com
    """
    cookies = {}
    for part in cookie_header.split(";"):
        part = part.strip()
        if "=" in part:
            key, value = part.split("=", 1)
            cookies[key.strip()] = value.strip()
    return cookies


# Cookies that need to be present for auth to work
REQUIRED_COOKIES = ["SID", "HSID", "SSID", "APISID", "SAPISID"]


def validate_cookies(cookies: dict[str, str]) -> bool:
    """Check if required cookies are present."""
    return all(required in cookies for required in REQUIRED_COOKIES)


# ============================================================================
# Refreshers
# ============================================================================
#
# A refresher takes the tokens that were just rejected and returns a fresh
# set, or raises AuthExpiredError when it cannot produce one.

Refresher = Callable[[AuthTokens], AuthTokens]


class PageTokenRefresher:
    """Re-derive CSRF token, session ID and build label from the app homepage."""

    # Headers required for page fetch (must look like a browser navigation)
    PAGE_FETCH_HEADERS = {
        "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/143.0.0.0 Safari/537.36",
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Sec-Fetch-Dest": "document",
        "Sec-Fetch-Mode": "navigate",
        "Sec-Fetch-Site": "none",
        "Sec-Fetch-User": "?1",
    }

    def __init__(
        self,
        base_url: str = constants.BASE_URL,
        timeout: float = 15.0,
        cache_path: Path | None = None,
        persist: bool = False,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.cache_path = cache_path
        self.persist = persist
        self._transport = transport

    def __call__(self, tokens: AuthTokens) -> AuthTokens:
        headers = {**self.PAGE_FETCH_HEADERS, "Cookie": tokens.cookie_header}

        with httpx.Client(
            headers=headers,
            follow_redirects=True,
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            try:
                response = client.get(f"{self.base_url}/")
            except httpx.HTTPError as e:
                raise AuthExpiredError(f"Could not fetch NotebookLM page to refresh tokens: {e}") from e

        # Redirected to login means the cookies themselves are dead
        if constants.LOGIN_HOST in str(response.url):
            raise AuthExpiredError(
                "Authentication expired. Save fresh cookies (NOTEBOOKLM_COOKIES or the "
                "save_auth_tokens tool) to re-authenticate."
            )

        if response.status_code != 200:
            raise AuthExpiredError(f"Failed to fetch NotebookLM page: HTTP {response.status_code}")

        html = response.text
        csrf_token = extract_csrf_from_page_source(html)
        if not csrf_token:
            raise AuthExpiredError(
                "Could not extract CSRF token from page. The page structure may have changed."
            )

        refreshed = replace(
            tokens,
            csrf_token=csrf_token,
            session_id=extract_session_id_from_page(html) or tokens.session_id,
            build_label=extract_build_label_from_page(html) or tokens.build_label,
        )

        if self.persist:
            save_tokens_to_cache(refreshed, self.cache_path)
        return refreshed


class CachedTokenRefresher:
    """Reload cookies from the on-disk cache, then re-derive page tokens.

    Picks up cookies written by an out-of-band login while the process was
    running.
    """

    def __init__(self, page_refresher: PageTokenRefresher | None = None, cache_path: Path | None = None):
        self.page_refresher = page_refresher or PageTokenRefresher()
        self.cache_path = cache_path

    def __call__(self, tokens: AuthTokens) -> AuthTokens:
        cached = load_cached_tokens(self.cache_path)
        if not cached or not cached.cookies:
            raise AuthExpiredError("No cached tokens found to reload.")
        # Force re-extraction of page tokens for the reloaded cookies
        return self.page_refresher(replace(cached, csrf_token="", session_id=""))


def chain_refreshers(*refreshers: Refresher) -> Refresher:
    """Combine refreshers; the first one that succeeds wins."""

    def refresh(tokens: AuthTokens) -> AuthTokens:
        last_error: AuthExpiredError | None = None
        for refresher in refreshers:
            try:
                return refresher(tokens)
            except AuthExpiredError as e:
                logger.debug("Refresher %r failed: %s", refresher, e)
                last_error = e
        raise last_error or AuthExpiredError("No refresh mechanism configured.")

    return refresh


# ============================================================================
# Session
# ============================================================================


class Session:
    """Process-wide credential holder shared by all in-flight calls.

    ``current()`` hands out immutable snapshots. ``refresh()`` is
    single-flight: while one thread runs the refresher, other callers wait
    and share its outcome instead of starting a second refresh.
    """

    def __init__(self, tokens: AuthTokens, refresher: Refresher | None = None):
        self._tokens = tokens
        self._refresher = refresher
        self._cond = threading.Condition()
        self._refreshing = False
        self._flight = 0
        self._failed_flight: int | None = None
        self._flight_error: BaseException | None = None
        self.refresh_count = 0

    @property
    def can_refresh(self) -> bool:
        return self._refresher is not None

    def current(self) -> AuthTokens:
        with self._cond:
            return self._tokens

    def replace_tokens(self, tokens: AuthTokens) -> None:
        """Install tokens obtained out-of-band (e.g. freshly saved cookies)."""
        with self._cond:
            self._tokens = tokens

    def refresh(self, stale: AuthTokens | None = None) -> AuthTokens:
        """Refresh credentials, coalescing concurrent requests into one refresh.

        Args:
            stale: The snapshot the caller used when it was rejected. If the
                session already moved past it, the newer snapshot is returned
                without refreshing again.

        Raises:
            AuthExpiredError: If no refresher is configured or the refresh failed.
        """
        with self._cond:
            if stale is not None and self._tokens is not stale:
                return self._tokens

            if self._refreshing:
                flight = self._flight
                while self._refreshing and self._flight == flight:
                    self._cond.wait()
                if self._failed_flight == flight:
                    raise AuthExpiredError(f"Token refresh failed: {self._flight_error}") from self._flight_error
                return self._tokens

            if self._refresher is None:
                raise AuthExpiredError("Authentication expired and no refresh mechanism is configured.")

            self._refreshing = True
            flight = self._flight
            current = self._tokens

        logger.debug("Refreshing auth tokens (flight %d)", flight)
        try:
            self.refresh_count += 1
            refreshed = self._refresher(current)
        except Exception as e:
            with self._cond:
                self._failed_flight = flight
                self._flight_error = e
                self._flight += 1
                self._refreshing = False
                self._cond.notify_all()
            if isinstance(e, AuthExpiredError):
                raise
            raise AuthExpiredError(f"Token refresh failed: {e}") from e

        with self._cond:
            self._tokens = refreshed
            self._flight += 1
            self._refreshing = False
            self._cond.notify_all()
        return refreshed
