import json

import httpx
import pytest

from notebooklm_rpc.auth import AuthTokens, Session
from notebooklm_rpc.transport import BatchExecuteTransport, TransportConfig


def frame_body(*frames, preamble: bytes = b")]}'\n") -> bytes:
    """Build a chunked response body from JSON values, one chunk each."""
    body = preamble
    for value in frames:
        data = json.dumps(value, separators=(",", ":")).encode("utf-8")
        body += str(len(data)).encode() + b"\n" + data + b"\n"
    return body


def envelope(rpc_id, payload, tag="generic", error=None):
    """A ``wrb.fr`` entry as the service sends it (payload JSON-encoded)."""
    encoded = None if payload is None else json.dumps(payload)
    return ["wrb.fr", rpc_id, encoded, None, None, [error] if error is not None else None, tag]


def rpc_response(*envelopes) -> bytes:
    return frame_body(list(envelopes), [["di", 42], ["af.httprm", 41, "-123", 7]])


@pytest.fixture
def tokens():
    return AuthTokens(cookies={"SID": "sid"}, csrf_token="csrf-1", session_id="42")


@pytest.fixture
def make_transport(tokens):
    """Build a transport whose HTTP traffic goes to ``handler``."""
    clients = []

    def factory(handler, refresher=None, session_tokens=None, **config):
        config.setdefault("backoff_base", 0)
        client = httpx.Client(transport=httpx.MockTransport(handler))
        clients.append(client)
        session = Session(session_tokens or tokens, refresher=refresher)
        return BatchExecuteTransport(session, TransportConfig(**config), http_client=client)

    yield factory
    for client in clients:
        client.close()
