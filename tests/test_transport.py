import threading
import urllib.parse
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from unittest.mock import MagicMock

import httpx
import pytest

from notebooklm_rpc.encoder import Call
from notebooklm_rpc.exceptions import (
    AuthExpiredError,
    CancelledError,
    FramingError,
    RpcServerError,
    TransportError,
)
from notebooklm_rpc.schemas import LIST_NOTEBOOKS_RESPONSE
from notebooklm_rpc.transport import SNIPPET_LENGTH, CancelToken

from conftest import envelope, frame_body, rpc_response


def _csrf(request: httpx.Request) -> str | None:
    form = urllib.parse.parse_qs(request.content.decode().rstrip("&"))
    return form.get("at", [None])[0]


def _refresher(csrf="csrf-2"):
    return MagicMock(side_effect=lambda tokens: replace(tokens, csrf_token=csrf))


class TestExchange:

    def test_request_shape(self, make_transport):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, content=rpc_response(envelope("wXbhsf", [[]])))

        transport = make_transport(handler)
        assert transport.execute_raw(Call("wXbhsf", [None, 1, None, [2]])) == [[]]

        [request] = seen
        assert request.method == "POST"
        assert request.url.params["rpcids"] == "wXbhsf"
        assert request.url.params["rt"] == "c"
        assert request.url.params["f.sid"] == "42"
        assert request.headers["Cookie"] == "SID=sid"
        assert request.headers["X-Same-Domain"] == "1"
        assert request.headers["Origin"] == "https://notebooklm.google.com"
        assert request.headers["Content-Type"].startswith("application/x-www-form-urlencoded")
        assert "Authorization" not in request.headers
        assert _csrf(request) == "csrf-1"

    def test_bearer_token_header(self, make_transport, tokens):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, content=rpc_response(envelope("A", [])))

        transport = make_transport(handler, session_tokens=replace(tokens, bearer_token="ya29.x"))
        transport.execute_raw(Call("A", []))
        assert seen[0].headers["Authorization"] == "Bearer ya29.x"

    def test_reqid_differs_per_request(self, make_transport):
        reqids = []

        def handler(request):
            reqids.append(request.url.params["_reqid"])
            return httpx.Response(200, content=rpc_response(envelope("A", [])))

        transport = make_transport(handler)
        transport.execute_raw(Call("A", []))
        transport.execute_raw(Call("A", []))
        assert reqids[0] != reqids[1]

    def test_batch_demultiplexed_by_rpc_id(self, make_transport):
        body = frame_body([envelope("B", ["payload-b"])], [envelope("A", ["payload-a"])])

        transport = make_transport(lambda request: httpx.Response(200, content=body))
        assert transport.execute_batch([Call("A", []), Call("B", [])]) == [["payload-a"], ["payload-b"]]

    def test_repeated_rpc_demultiplexed_by_position(self, make_transport):
        body = rpc_response(envelope("A", ["second"], tag="2"), envelope("A", ["first"], tag="1"))

        transport = make_transport(lambda request: httpx.Response(200, content=body))
        assert transport.execute_batch([Call("A", [1]), Call("A", [2])]) == [["first"], ["second"]]

    def test_execute_decodes_with_schema(self, make_transport):
        body = rpc_response(envelope("wXbhsf", [[["Title", None, "nb-1"]]]))

        transport = make_transport(lambda request: httpx.Response(200, content=body))
        response = transport.execute(Call("wXbhsf", []), LIST_NOTEBOOKS_RESPONSE)
        assert response.notebooks[0].notebook_id == "nb-1"
        assert response.notebooks[0].sources == []

    def test_missing_envelope(self, make_transport):
        body = rpc_response(envelope("OTHER", []))

        transport = make_transport(lambda request: httpx.Response(200, content=body))
        with pytest.raises(FramingError, match="no response envelope"):
            transport.execute_raw(Call("A", []))

    def test_server_error_status(self, make_transport):
        refresher = _refresher()
        body = rpc_response(envelope("A", None, error=5))

        transport = make_transport(lambda request: httpx.Response(200, content=body), refresher=refresher)
        with pytest.raises(RpcServerError) as exc:
            transport.execute_raw(Call("A", []))
        assert exc.value.code == 5
        assert exc.value.name == "not_found"
        refresher.assert_not_called()


class TestAuthRecovery:

    def test_refresh_and_retry_on_401(self, make_transport):
        seen = []

        def handler(request):
            seen.append(_csrf(request))
            if _csrf(request) == "csrf-1":
                return httpx.Response(401)
            return httpx.Response(200, content=rpc_response(envelope("A", ["ok"])))

        refresher = _refresher()
        transport = make_transport(handler, refresher=refresher)
        assert transport.execute_raw(Call("A", [])) == ["ok"]
        refresher.assert_called_once()
        assert seen == ["csrf-1", "csrf-2"]

    def test_refresh_and_retry_on_403(self, make_transport):
        def handler(request):
            if _csrf(request) == "csrf-1":
                return httpx.Response(403, content=b"Forbidden")
            return httpx.Response(200, content=rpc_response(envelope("A", ["ok"])))

        refresher = _refresher()
        transport = make_transport(handler, refresher=refresher)
        assert transport.execute_raw(Call("A", [])) == ["ok"]
        refresher.assert_called_once()

    def test_missing_csrf_extracted_before_first_post(self, make_transport, tokens):
        seen = []

        def handler(request):
            seen.append(_csrf(request))
            if _csrf(request) is None:
                return httpx.Response(400)
            return httpx.Response(200, content=rpc_response(envelope("A", ["ok"])))

        refresher = _refresher()
        transport = make_transport(handler, refresher=refresher, session_tokens=replace(tokens, csrf_token=""))
        assert transport.execute_raw(Call("A", [])) == ["ok"]
        refresher.assert_called_once()
        assert seen == ["csrf-2"]

    def test_refresh_and_retry_on_rpc_error_16(self, make_transport):
        def handler(request):
            if _csrf(request) == "csrf-1":
                return httpx.Response(200, content=rpc_response(envelope("A", None, error=16)))
            return httpx.Response(200, content=rpc_response(envelope("A", ["ok"])))

        refresher = _refresher()
        transport = make_transport(handler, refresher=refresher)
        assert transport.execute_raw(Call("A", [])) == ["ok"]
        refresher.assert_called_once()

    def test_login_redirect_triggers_refresh(self, make_transport):
        def handler(request):
            if _csrf(request) == "csrf-1":
                return httpx.Response(302, headers={"Location": "https://accounts.google.com/ServiceLogin"})
            return httpx.Response(200, content=rpc_response(envelope("A", ["ok"])))

        refresher = _refresher()
        transport = make_transport(handler, refresher=refresher)
        assert transport.execute_raw(Call("A", [])) == ["ok"]
        refresher.assert_called_once()

    def test_login_page_body_triggers_refresh(self, make_transport):
        def handler(request):
            if _csrf(request) == "csrf-1":
                return httpx.Response(200, content=b"<html><a href='https://accounts.google.com/ServiceLogin'>")
            return httpx.Response(200, content=rpc_response(envelope("A", ["ok"])))

        refresher = _refresher()
        transport = make_transport(handler, refresher=refresher)
        assert transport.execute_raw(Call("A", [])) == ["ok"]

    def test_second_rejection_is_auth_expired(self, make_transport):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401)

        refresher = _refresher()
        transport = make_transport(handler, refresher=refresher)
        with pytest.raises(AuthExpiredError):
            transport.execute_raw(Call("A", []))
        refresher.assert_called_once()
        assert len(calls) == 2

    def test_no_refresher_is_auth_expired(self, make_transport):
        transport = make_transport(lambda request: httpx.Response(401))
        with pytest.raises(AuthExpiredError, match="no refresh mechanism"):
            transport.execute_raw(Call("A", []))

    def test_concurrent_rejections_share_one_refresh(self, make_transport):
        callers = 5
        barrier = threading.Barrier(callers, timeout=5)

        def handler(request):
            if _csrf(request) == "csrf-1":
                # Hold every caller until all of them are using the stale token
                barrier.wait()
                return httpx.Response(401)
            return httpx.Response(200, content=rpc_response(envelope("A", ["ok"])))

        refresher = _refresher()
        transport = make_transport(handler, refresher=refresher)
        with ThreadPoolExecutor(max_workers=callers) as pool:
            futures = [pool.submit(transport.execute_raw, Call("A", [])) for _ in range(callers)]
            results = [f.result(timeout=10) for f in futures]

        assert results == [["ok"]] * callers
        assert refresher.call_count == 1
        assert transport.session.refresh_count == 1
        assert transport.session.current().csrf_token == "csrf-2"


class TestNetworkRetries:

    def test_network_errors_are_retried(self, make_transport):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                raise httpx.ConnectError("connection reset", request=request)
            return httpx.Response(200, content=rpc_response(envelope("A", ["ok"])))

        transport = make_transport(handler, max_retries=3)
        assert transport.execute_raw(Call("A", [])) == ["ok"]
        assert len(attempts) == 3

    def test_retry_bound(self, make_transport):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ReadTimeout("timed out", request=request)

        transport = make_transport(handler, max_retries=2)
        with pytest.raises(TransportError) as exc:
            transport.execute_raw(Call("A", []))
        assert len(attempts) == 3
        assert isinstance(exc.value.__cause__, httpx.ReadTimeout)

    def test_retries_can_be_disabled_per_call(self, make_transport):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ConnectError("down", request=request)

        transport = make_transport(handler, max_retries=3)
        with pytest.raises(TransportError):
            transport.execute_raw(Call("A", []), retries=0)
        assert len(attempts) == 1

    def test_http_error_status_not_retried(self, make_transport):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(500, content=b"Internal oops " + b"x" * 1000)

        transport = make_transport(handler)
        with pytest.raises(TransportError) as exc:
            transport.execute_raw(Call("A", []))
        assert exc.value.status_code == 500
        assert exc.value.snippet.startswith("Internal oops")
        assert len(exc.value.snippet) == 500
        assert len(attempts) == 1

    def test_client_error_snippet_is_truncated(self, make_transport):
        refresher = _refresher()
        body = "é" * 2000

        transport = make_transport(lambda request: httpx.Response(400, text=body), refresher=refresher)
        with pytest.raises(TransportError) as exc:
            transport.execute_raw(Call("A", []))
        assert exc.value.status_code == 400
        assert exc.value.snippet == "é" * SNIPPET_LENGTH
        refresher.assert_not_called()

    def test_stream_ending_mid_chunk(self, make_transport):
        body = frame_body([envelope("A", ["payload"])])
        pieces = [body[:5], body[5:12], body[12:-4]]

        transport = make_transport(lambda request: httpx.Response(200, stream=_PiecesStream(pieces)))
        with pytest.raises(FramingError, match="mid-chunk") as exc:
            transport.execute_raw(Call("A", []))
        assert exc.value.rpc_id == "A"

    def test_framing_error_not_retried(self, make_transport):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(200, content=b")]}'\n12\n[1]")

        transport = make_transport(handler)
        with pytest.raises(FramingError, match="mid-chunk"):
            transport.execute_raw(Call("A", []))
        assert len(attempts) == 1

    def test_backoff_is_exponential_and_capped(self, make_transport):
        transport = make_transport(lambda request: httpx.Response(200), backoff_base=0.5, backoff_max=3.0)
        assert [transport.config.backoff(i) for i in range(4)] == [0.5, 1.0, 2.0, 3.0]


class _PiecesStream(httpx.SyncByteStream):
    """Delivers the body in the given pieces."""

    def __init__(self, pieces):
        self.pieces = pieces
        self.closed = threading.Event()

    def __iter__(self):
        yield from self.pieces

    def close(self):
        self.closed.set()


class _BlockingStream(httpx.SyncByteStream):
    """Yields the preamble, then blocks until the response is closed."""

    def __init__(self):
        self.started = threading.Event()
        self.closed = threading.Event()

    def __iter__(self):
        yield b")]}'\n"
        self.started.set()
        self.closed.wait(5)
        if not self.closed.is_set():
            yield frame_body([envelope("A", ["late"])])[5:]

    def close(self):
        self.closed.set()


class TestCancellation:

    def test_cancelled_before_call(self, make_transport):
        handler = MagicMock()
        transport = make_transport(handler)
        token = CancelToken()
        token.cancel()
        with pytest.raises(CancelledError):
            transport.execute_raw(Call("A", []), cancel=token)
        handler.assert_not_called()

    def test_cancel_mid_stream(self, make_transport):
        stream = _BlockingStream()
        transport = make_transport(lambda request: httpx.Response(200, stream=stream))
        token = CancelToken()

        with ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(transport.execute_raw, Call("A", []), cancel=token)
            assert stream.started.wait(5)
            token.cancel()
            with pytest.raises(CancelledError):
                future.result(timeout=5)
        assert stream.closed.is_set()

    def test_cancel_while_waiting_for_headers(self, make_transport):
        entered = threading.Event()
        release = threading.Event()
        stream = _PiecesStream([rpc_response(envelope("A", ["late"]))])

        def handler(request):
            entered.set()
            release.wait(5)
            return httpx.Response(200, stream=stream)

        transport = make_transport(handler)
        token = CancelToken()
        try:
            with ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(transport.execute_raw, Call("A", []), cancel=token)
                assert entered.wait(5)
                token.cancel()
                with pytest.raises(CancelledError):
                    future.result(timeout=2)
        finally:
            release.set()
        # The response that shows up after cancellation is discarded
        assert stream.closed.wait(5)

    def test_on_cancel_after_cancel_runs_immediately(self):
        token = CancelToken()
        token.cancel()
        callback = MagicMock()
        token.on_cancel(callback)
        callback.assert_called_once()

    def test_removed_callback_not_run(self):
        token = CancelToken()
        callback = MagicMock()
        remove = token.on_cancel(callback)
        remove()
        token.cancel()
        callback.assert_not_called()
