"""Client settings read from the environment.

Environment Variables:
  NOTEBOOKLM_COOKIES        Cookie header copied from the browser
  NOTEBOOKLM_CSRF_TOKEN     Anti-forgery token (optional, auto-extracted)
  NOTEBOOKLM_SESSION_ID     Session ID (optional, auto-extracted)
  NOTEBOOKLM_BEARER_TOKEN   Bearer token sent as Authorization (optional)
  NOTEBOOKLM_BL             Frontend build label override
  NOTEBOOKLM_BASE_URL       Service base URL
  NOTEBOOKLM_TIMEOUT        Per-request timeout in seconds (default: 30.0)
  NOTEBOOKLM_MAX_RETRIES    Network retry bound (default: 3)
  NOTEBOOKLM_DEBUG          Enable debug logging of API traffic (true/false)

When no cookies are set in the environment, the token cache written by
``save_auth_tokens`` is used.
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from . import constants
from .auth import AuthTokens, load_cached_tokens, parse_cookie_header


def _env_bool(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    cookies: dict[str, str] = field(default_factory=dict)
    csrf_token: str = ""
    session_id: str = ""
    bearer_token: str = ""
    build_label: str = ""
    base_url: str = constants.BASE_URL
    timeout: float = 30.0
    max_retries: int = 3
    debug: bool = False
    persist_tokens: bool = True

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, cached: AuthTokens | None = None) -> "Settings":
        """Load settings from environment variables, falling back to the token cache.

        Raises:
            ValueError: If no cookies are available from either source, or a
                numeric variable does not parse.
        """
        env = os.environ if environ is None else environ

        cookie_header = env.get("NOTEBOOKLM_COOKIES", "")
        csrf_token = env.get("NOTEBOOKLM_CSRF_TOKEN", "")
        session_id = env.get("NOTEBOOKLM_SESSION_ID", "")
        bearer_token = env.get("NOTEBOOKLM_BEARER_TOKEN", "")
        build_label = env.get("NOTEBOOKLM_BL", "")

        if cookie_header:
            cookies = parse_cookie_header(cookie_header)
        else:
            cached = cached or load_cached_tokens()
            if not cached:
                raise ValueError(
                    "No authentication found. Either:\n"
                    "1. Call the save_auth_tokens tool with your browser cookies, or\n"
                    "2. Set NOTEBOOKLM_COOKIES environment variable manually"
                )
            cookies = cached.cookies
            csrf_token = csrf_token or cached.csrf_token
            session_id = session_id or cached.session_id
            bearer_token = bearer_token or cached.bearer_token
            build_label = build_label or cached.build_label

        try:
            timeout = float(env.get("NOTEBOOKLM_TIMEOUT", "30.0"))
            max_retries = int(env.get("NOTEBOOKLM_MAX_RETRIES", "3"))
        except ValueError as e:
            raise ValueError(f"Invalid numeric setting: {e}") from e

        return cls(
            cookies=cookies,
            csrf_token=csrf_token,
            session_id=session_id,
            bearer_token=bearer_token,
            build_label=build_label,
            base_url=env.get("NOTEBOOKLM_BASE_URL", constants.BASE_URL),
            timeout=timeout,
            max_retries=max_retries,
            debug=_env_bool(env.get("NOTEBOOKLM_DEBUG")),
        )
