import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from unittest.mock import MagicMock

import httpx
import pytest

from notebooklm_rpc.auth import (
    AuthTokens,
    CachedTokenRefresher,
    PageTokenRefresher,
    Session,
    chain_refreshers,
    extract_build_label_from_page,
    extract_csrf_from_page_source,
    extract_session_id_from_page,
    load_cached_tokens,
    parse_cookie_header,
    save_tokens_to_cache,
    validate_cookies,
)
from notebooklm_rpc.exceptions import AuthExpiredError

PAGE = '<script>WIZ_global_data = {"SNlM0e":"csrf-new","FdrFJe":"-123","cfb2h":"boq_labs_20260201"};</script>'


class TestSession:

    def test_refresh_without_refresher(self, tokens):
        session = Session(tokens)
        assert not session.can_refresh
        with pytest.raises(AuthExpiredError):
            session.refresh(stale=tokens)

    def test_refresh_replaces_tokens(self, tokens):
        session = Session(tokens, refresher=lambda t: replace(t, csrf_token="csrf-2"))
        refreshed = session.refresh(stale=tokens)
        assert refreshed.csrf_token == "csrf-2"
        assert session.current() is refreshed

    def test_stale_snapshot_does_not_refresh_twice(self, tokens):
        refresher = MagicMock(side_effect=lambda t: replace(t, csrf_token="csrf-2"))
        session = Session(tokens, refresher=refresher)
        first = session.refresh(stale=tokens)
        second = session.refresh(stale=tokens)
        assert first is second
        refresher.assert_called_once()

    def test_refresh_failure_is_shared_by_waiters(self, tokens):
        started = threading.Event()

        def failing(t):
            started.set()
            time.sleep(0.2)
            raise AuthExpiredError("cookies are dead")

        session = Session(tokens, refresher=failing)
        with ThreadPoolExecutor(max_workers=3) as pool:
            leader = pool.submit(session.refresh, tokens)
            assert started.wait(5)
            waiters = [pool.submit(session.refresh, tokens) for _ in range(2)]
            for future in [leader, *waiters]:
                with pytest.raises(AuthExpiredError):
                    future.result(timeout=5)
        assert session.refresh_count == 1

    def test_unexpected_refresher_error_becomes_auth_expired(self, tokens):
        def broken(t):
            raise RuntimeError("boom")

        session = Session(tokens, refresher=broken)
        with pytest.raises(AuthExpiredError, match="boom"):
            session.refresh()

    def test_replace_tokens(self, tokens):
        session = Session(tokens)
        new = replace(tokens, cookies={"SID": "other"})
        session.replace_tokens(new)
        assert session.current() is new


class TestPageTokenRefresher:

    def test_extracts_page_tokens(self, tokens):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, text=PAGE)

        refresher = PageTokenRefresher(transport=httpx.MockTransport(handler))
        refreshed = refresher(tokens)
        assert refreshed.csrf_token == "csrf-new"
        assert refreshed.session_id == "-123"
        assert refreshed.build_label == "boq_labs_20260201"
        assert refreshed.cookies == tokens.cookies
        assert seen[0].headers["Cookie"] == "SID=sid"

    def test_login_redirect_is_auth_expired(self, tokens):
        def handler(request):
            if request.url.host == "accounts.google.com":
                return httpx.Response(200, text="<html>Sign in</html>")
            return httpx.Response(302, headers={"Location": "https://accounts.google.com/ServiceLogin"})

        refresher = PageTokenRefresher(transport=httpx.MockTransport(handler))
        with pytest.raises(AuthExpiredError, match="expired"):
            refresher(tokens)

    def test_missing_csrf_is_auth_expired(self, tokens):
        refresher = PageTokenRefresher(transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html/>")))
        with pytest.raises(AuthExpiredError, match="CSRF"):
            refresher(tokens)

    def test_persists_when_asked(self, tokens, tmp_path):
        cache = tmp_path / "auth.json"
        refresher = PageTokenRefresher(
            cache_path=cache,
            persist=True,
            transport=httpx.MockTransport(lambda r: httpx.Response(200, text=PAGE)),
        )
        refresher(tokens)
        assert load_cached_tokens(cache).csrf_token == "csrf-new"


class TestRefresherChain:

    def test_first_success_wins(self, tokens):
        failing = MagicMock(side_effect=AuthExpiredError("no"))
        working = MagicMock(side_effect=lambda t: replace(t, csrf_token="ok"))
        assert chain_refreshers(failing, working)(tokens).csrf_token == "ok"
        failing.assert_called_once()

    def test_all_fail(self, tokens):
        failing = MagicMock(side_effect=AuthExpiredError("no"))
        with pytest.raises(AuthExpiredError, match="no"):
            chain_refreshers(failing, failing)(tokens)

    def test_cached_refresher_reloads_cookies(self, tokens, tmp_path):
        cache = tmp_path / "auth.json"
        save_tokens_to_cache(AuthTokens(cookies={"SID": "fresh"}, csrf_token="old"), cache)
        page = MagicMock(side_effect=lambda t: replace(t, csrf_token="from-page"))
        refreshed = CachedTokenRefresher(page, cache)(tokens)
        assert refreshed.cookies == {"SID": "fresh"}
        assert refreshed.csrf_token == "from-page"
        assert page.call_args[0][0].csrf_token == ""

    def test_cached_refresher_without_cache(self, tokens, tmp_path):
        with pytest.raises(AuthExpiredError):
            CachedTokenRefresher(MagicMock(), tmp_path / "missing.json")(tokens)


class TestTokenCache:

    def test_roundtrip(self, tmp_path):
        cache = tmp_path / "auth.json"
        original = AuthTokens(
            cookies={"SID": "a", "HSID": "b"},
            csrf_token="c",
            session_id="d",
            bearer_token="e",
            build_label="f",
            extracted_at=time.time(),
        )
        assert save_tokens_to_cache(original, cache) == cache
        assert load_cached_tokens(cache) == original

    def test_corrupt_cache_is_ignored(self, tmp_path):
        cache = tmp_path / "auth.json"
        cache.write_text("{not json")
        assert load_cached_tokens(cache) is None

    def test_missing_cache(self, tmp_path):
        assert load_cached_tokens(tmp_path / "nope.json") is None


def test_page_extraction_helpers():
    assert extract_csrf_from_page_source(PAGE) == "csrf-new"
    assert extract_session_id_from_page(PAGE) == "-123"
    assert extract_build_label_from_page(PAGE) == "boq_labs_20260201"
    assert extract_csrf_from_page_source("<html/>") is None


def test_cookie_helpers():
    cookies = parse_cookie_header("SID=a; HSID=b;SSID=c; APISID=d; SAPISID=e=f")
    assert cookies["SAPISID"] == "e=f"
    assert cookies["SSID"] == "c"
    assert validate_cookies(cookies)
    assert not validate_cookies({"SID": "a"})
