"""HTTP exchange with the batchexecute endpoint.

One exchange is one POST. The response body is streamed through a
``FrameReader`` so frames are validated as they arrive, then the envelope
matching the call's RPC id is picked out of the frames.

Recovery policy:

- network errors (timeouts, resets) are retried with exponential backoff;
- an auth rejection (HTTP 401/403, a redirect to the login page, or RPC
  error 16) triggers one session refresh and one retry;
- everything else (framing errors, other 4xx/5xx, server RPC errors)
  propagates immediately.
"""

import contextlib
import json
import logging
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import CancelledError as FutureCancelledError
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass, field
from typing import Any

import httpx

from . import constants
from .auth import AuthTokens, Session
from .decoder import Schema, decode
from .encoder import Call, EncodedRequest, RequestCounter, decode_request_body, encode_batch
from .exceptions import (
    AuthExpiredError,
    CancelledError,
    FramingError,
    RpcServerError,
    TransportError,
)
from .framing import DEFAULT_MAX_FRAME_SIZE, FrameReader, RpcEnvelope, find_envelope, parse_envelopes

# API internals are only logged at DEBUG level, usually disabled
logger = logging.getLogger("notebooklm_rpc.transport")
logger.setLevel(logging.WARNING)

# Timeout configuration (seconds)
DEFAULT_TIMEOUT = 30.0
SOURCE_ADD_TIMEOUT = 120.0  # Extended timeout for source operations (large docs/websites)

SNIPPET_LENGTH = 500

# Body markers seen on 200 responses when the session is no longer valid
SESSION_EXPIRED_MARKERS = (b"ServiceLogin", b"accounts.google.com/v3/signin")


def format_debug_json(data: Any, max_length: int = 2000) -> str:
    """Format data as pretty-printed JSON for debug logging."""
    try:
        formatted = json.dumps(data, indent=2, ensure_ascii=False)
    except (TypeError, ValueError):
        formatted = str(data)
    if len(formatted) > max_length:
        return formatted[:max_length] + "\n  ... (truncated)"
    return formatted


@dataclass
class TransportConfig:
    """Transport settings.

    ``logger`` is the diagnostic channel for request/response traces; pass
    a dedicated logger to observe one client without touching global state.
    """
    base_url: str = constants.BASE_URL
    batchexecute_path: str = constants.BATCHEXECUTE_PATH
    timeout: float = DEFAULT_TIMEOUT
    max_retries: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    build_label: str = constants.DEFAULT_BUILD_LABEL
    language: str = "en"
    user_agent: str = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36"
    max_frame_size: int = DEFAULT_MAX_FRAME_SIZE
    logger: logging.Logger = field(default=logger)

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}{self.batchexecute_path}"

    def backoff(self, attempt: int) -> float:
        return min(self.backoff_max, self.backoff_base * (2 ** attempt))


class CancelToken:
    """Caller-side handle to abort an in-flight call from another thread."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; True if cancelled."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError("call cancelled by caller")

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                registered = True
            else:
                registered = False
        if not registered:
            callback()

        def remove() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return remove


class _AuthRejected(Exception):
    """Internal signal: the exchange was rejected for authentication."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class BatchExecuteTransport:
    """Executes calls against the batchexecute endpoint.

    Thread-safe: any number of threads may issue calls concurrently. The
    request counter and the session are the only shared state.
    """

    def __init__(
        self,
        session: Session,
        config: TransportConfig | None = None,
        counter: RequestCounter | None = None,
        http_client: httpx.Client | None = None,
    ):
        self.session = session
        self.config = config or TransportConfig()
        self.counter = counter or RequestCounter()
        self._client = http_client
        self._owns_client = http_client is None
        self._client_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def execute_raw(
        self,
        call: Call,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
        retries: int | None = None,
    ) -> Any:
        """Run one call and return its raw JSON payload."""
        return self.execute_batch([call], timeout=timeout, cancel=cancel, retries=retries)[0]

    def execute(
        self,
        call: Call,
        schema: Schema,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
        retries: int | None = None,
    ) -> Any:
        """Run one call and decode its payload with ``schema``."""
        raw = self.execute_raw(call, timeout=timeout, cancel=cancel, retries=retries)
        return decode(raw, schema, diagnostics=self.config.logger)

    def execute_batch(
        self,
        calls: Sequence[Call],
        timeout: float | None = None,
        cancel: CancelToken | None = None,
        retries: int | None = None,
    ) -> list[Any]:
        """Run several calls in one POST; payloads come back in call order.

        ``retries`` overrides the configured network retry bound (0 disables
        retries for calls that must not be replayed).
        """
        calls = list(calls)
        max_retries = self.config.max_retries if retries is None else retries
        tokens = self.session.current()
        if not tokens.csrf_token and tokens.cookies and self.session.can_refresh:
            # Page tokens are derived from the cookies before the first POST
            self.config.logger.debug("No CSRF token yet, extracting page tokens")
            tokens = self.session.refresh(stale=tokens)
        try:
            return self._exchange_with_retries(calls, tokens, timeout, cancel, max_retries)
        except _AuthRejected as e:
            self.config.logger.debug("Auth rejected (%s), refreshing session", e.reason)

        tokens = self.session.refresh(stale=tokens)
        try:
            return self._exchange_with_retries(calls, tokens, timeout, cancel, max_retries)
        except _AuthRejected as e:
            raise AuthExpiredError(
                f"Authentication expired ({e.reason}) and refreshed credentials were also rejected."
            ) from None

    def close(self) -> None:
        """Close the HTTP client."""
        with self._client_lock:
            if self._client is not None and self._owns_client:
                self._client.close()
            self._client = None

    def __enter__(self) -> "BatchExecuteTransport":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        with self._client_lock:
            if self._client is None:
                self._client = httpx.Client(timeout=self.config.timeout)
                self._owns_client = True
            return self._client

    def _headers(self, tokens: AuthTokens) -> dict[str, str]:
        # Sent per request so an injected client gets them too
        headers = {
            "Content-Type": "application/x-www-form-urlencoded;charset=UTF-8",
            "Origin": self.config.base_url,
            "Referer": f"{self.config.base_url}/",
            "X-Same-Domain": "1",
            "User-Agent": self.config.user_agent,
            "Cookie": tokens.cookie_header,
        }
        if tokens.bearer_token:
            headers["Authorization"] = f"Bearer {tokens.bearer_token}"
        return headers

    def _exchange_with_retries(
        self,
        calls: list[Call],
        tokens: AuthTokens,
        timeout: float | None,
        cancel: CancelToken | None,
        max_retries: int,
    ) -> list[Any]:
        log = self.config.logger
        attempt = 0
        while True:
            if cancel is not None:
                cancel.raise_if_cancelled()
            try:
                return self._exchange(calls, tokens, timeout, cancel)
            except httpx.TransportError as e:
                if cancel is not None and cancel.cancelled:
                    raise CancelledError("call cancelled by caller") from e
                if attempt >= max_retries:
                    raise TransportError(
                        f"network error after {attempt + 1} attempt(s): {e!r}",
                        rpc_id=",".join(c.rpc_id for c in calls),
                    ) from e
                delay = self.config.backoff(attempt)
                log.debug("Network error %r, retrying in %.2fs (attempt %d)", e, delay, attempt + 1)
                attempt += 1
                self._sleep(delay, cancel)

    def _sleep(self, delay: float, cancel: CancelToken | None) -> None:
        if delay <= 0:
            return
        if cancel is None:
            time.sleep(delay)
            return
        # Wake early on cancellation
        if cancel.wait(delay):
            cancel.raise_if_cancelled()

    def _exchange(
        self,
        calls: list[Call],
        tokens: AuthTokens,
        timeout: float | None,
        cancel: CancelToken | None,
    ) -> list[Any]:
        log = self.config.logger
        request = encode_batch(
            calls,
            csrf_token=tokens.csrf_token,
            reqid=self.counter.next(),
            session_id=tokens.session_id,
            build_label=tokens.build_label or self.config.build_label,
            language=self.config.language,
        )
        url = request.url(self.config.endpoint)

        if log.isEnabledFor(logging.DEBUG):
            self._log_request(request)

        client = self._get_client()
        http_request = client.build_request(
            "POST",
            url,
            content=request.body.encode("utf-8"),
            headers=self._headers(tokens),
            timeout=timeout or self.config.timeout,
        )
        response = self._send(client, http_request, cancel)
        try:
            remove_callback = cancel.on_cancel(response.close) if cancel is not None else None
            try:
                envelopes = self._read_envelopes(response, calls, cancel)
            finally:
                if remove_callback is not None:
                    remove_callback()
        finally:
            response.close()

        return self._demultiplex(calls, request, envelopes)

    def _send(self, client: httpx.Client, request: httpx.Request, cancel: CancelToken | None) -> httpx.Response:
        """Send ``request`` and return the streaming response once headers arrive.

        With a cancel token the request phase runs on a helper thread so a
        cancel during connect or while waiting for headers returns at once.
        A response that arrives after cancellation is closed by the helper.
        """
        if cancel is None:
            return client.send(request, stream=True)
        cancel.raise_if_cancelled()

        pending: Future = Future()

        def send() -> None:
            try:
                response = client.send(request, stream=True)
            except Exception as e:
                with contextlib.suppress(InvalidStateError):
                    pending.set_exception(e)
                return
            try:
                pending.set_result(response)
            except InvalidStateError:
                response.close()

        threading.Thread(target=send, name="batchexecute-send", daemon=True).start()
        remove_callback = cancel.on_cancel(pending.cancel)
        try:
            return pending.result()
        except FutureCancelledError:
            raise CancelledError("call cancelled by caller") from None
        finally:
            remove_callback()

    def _read_envelopes(
        self,
        response: httpx.Response,
        calls: list[Call],
        cancel: CancelToken | None,
    ) -> list[RpcEnvelope]:
        log = self.config.logger
        rpc_label = ",".join(c.rpc_id for c in calls)

        if log.isEnabledFor(logging.DEBUG):
            log.debug("Response Status: %s", response.status_code)

        if response.status_code in (401, 403):
            raise _AuthRejected(f"HTTP {response.status_code}")
        if response.is_redirect:
            location = response.headers.get("location", "")
            if constants.LOGIN_HOST in location:
                raise _AuthRejected("redirected to login")
        if not response.is_success:
            snippet = response.read().decode("utf-8", errors="replace")[:SNIPPET_LENGTH]
            if log.isEnabledFor(logging.DEBUG):
                log.debug("Error Response Body: %s", snippet)
            raise TransportError("batchexecute request failed", response.status_code, snippet, rpc_label)

        reader = FrameReader(self.config.max_frame_size)
        envelopes: list[RpcEnvelope] = []
        head = b""
        try:
            for chunk in response.iter_bytes():
                if cancel is not None:
                    cancel.raise_if_cancelled()
                if len(head) < SNIPPET_LENGTH:
                    head += chunk[:SNIPPET_LENGTH - len(head)]
                try:
                    frames = reader.feed(chunk)
                except FramingError as e:
                    if any(marker in head for marker in SESSION_EXPIRED_MARKERS):
                        raise _AuthRejected("session expired page") from e
                    raise FramingError(str(e), rpc_id=rpc_label) from e
                for frame in frames:
                    envelopes.extend(parse_envelopes(frame))
        except (httpx.StreamError, httpx.TransportError) as e:
            # Closing the response from the cancelling thread surfaces here
            if cancel is not None and cancel.cancelled:
                raise CancelledError("call cancelled by caller") from e
            raise

        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            reader.close()
        except FramingError as e:
            raise FramingError(str(e), rpc_id=rpc_label) from e
        return envelopes

    def _demultiplex(self, calls: list[Call], request: EncodedRequest, envelopes: list[RpcEnvelope]) -> list[Any]:
        log = self.config.logger
        results = []
        for position, call in enumerate(calls, start=1):
            envelope = find_envelope(envelopes, call.rpc_id, position if request.indexed else None)
            if envelope is None:
                raise FramingError(f"no response envelope for RPC {call.rpc_id}", rpc_id=call.rpc_id)
            if envelope.error_code == constants.RPC_ERROR_UNAUTHENTICATED:
                raise _AuthRejected(f"RPC error {envelope.error_code}")
            if envelope.error_code is not None:
                raise RpcServerError(
                    call.rpc_id,
                    envelope.error_code,
                    constants.RPC_ERROR_CODES.get_name(envelope.error_code),
                )
            if log.isEnabledFor(logging.DEBUG):
                log.debug("Response Data (%s):\n%s", call.rpc_id, format_debug_json(envelope.payload))
            results.append(envelope.payload)
        return results

    def _log_request(self, request: EncodedRequest) -> None:
        log = self.config.logger
        log.debug("=" * 70)
        names = ", ".join(f"{rpc_id} ({constants.RPC_NAMES.get(rpc_id, 'unknown')})" for rpc_id in request.rpc_ids)
        log.debug("RPC Call: %s reqid=%d", names, request.reqid)
        log.debug("URL Parameters:")
        for key, value in request.params.items():
            log.debug("  %s: %s", key, value)
        decoded = decode_request_body(request.body)
        for call in decoded.get("calls", []):
            log.debug("Request Params (%s):\n%s", call["rpc_id"], format_debug_json(call["params"]))
