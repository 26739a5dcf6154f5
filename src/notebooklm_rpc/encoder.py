"""Call encoding for the batchexecute endpoint.

A call travels as an HTML form POST. The ``f.req`` field holds the batch as
JSON: one inner array per call, ``[rpc_id, args_json, null, "generic"]``,
where ``args_json`` is itself a JSON *string*. The ``at`` field carries the
anti-forgery token; the request index goes in the ``_reqid`` query parameter.
"""

import json
import random
import threading
import urllib.parse
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from . import constants
from .exceptions import EncodingError


@dataclass(frozen=True)
class Call:
    """A single RPC invocation.

    ``args`` is positional: omitted arguments must stay ``None`` so later
    arguments keep their index. ``scope_key`` routes the call to a
    notebook-scoped context (sent as ``source-path``).
    """
    rpc_id: str
    args: Sequence[Any] = field(default_factory=tuple)
    scope_key: str | None = None

    @property
    def source_path(self) -> str:
        if self.scope_key:
            return f"/notebook/{self.scope_key}"
        return "/"


class RequestCounter:
    """Thread-safe ``_reqid`` generator.

    Starts at a random six-digit value like the web app does and advances by
    a fixed step per request.
    """

    def __init__(self, start: int | None = None, step: int = 100000):
        self._value = start if start is not None else random.randint(100000, 999999)
        self._step = step
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            value = self._value
            self._value += self._step
            return value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


@dataclass(frozen=True)
class EncodedRequest:
    """Wire form of one batch: the form body plus the URL query parameters."""
    body: str
    params: dict[str, str]
    reqid: int
    rpc_ids: tuple[str, ...]
    indexed: bool = False

    def url(self, endpoint: str) -> str:
        return f"{endpoint}?{urllib.parse.urlencode(self.params)}"


def _to_json(value: Any) -> Any:
    # Tuples are accepted as arrays; everything else is left to json.dumps
    if isinstance(value, tuple):
        return [_to_json(v) for v in value]
    if isinstance(value, list):
        return [_to_json(v) for v in value]
    return value


def encode_args(args: Sequence[Any], rpc_id: str | None = None) -> str:
    """Serialize a positional argument tree as compact JSON (Chrome's format)."""
    if isinstance(args, (str, bytes, dict)) or not isinstance(args, Sequence):
        raise EncodingError(f"arguments must be a positional array, got {type(args).__name__}", rpc_id)
    try:
        return json.dumps(_to_json(args), separators=(",", ":"), allow_nan=False)
    except ValueError as e:
        # allow_nan=False raises ValueError for NaN/Infinity
        raise EncodingError(f"argument not representable: {e}", rpc_id) from e
    except TypeError as e:
        raise EncodingError(f"argument not serializable: {e}", rpc_id) from e


def encode_batch(
    calls: Sequence[Call],
    csrf_token: str = "",
    reqid: int = 0,
    session_id: str = "",
    build_label: str = constants.DEFAULT_BUILD_LABEL,
    language: str = "en",
) -> EncodedRequest:
    """Build the batchexecute body and query parameters for one or more calls."""
    if not calls:
        raise EncodingError("at least one call is required")

    for call in calls:
        if not call.rpc_id or not isinstance(call.rpc_id, str):
            raise EncodingError(f"invalid RPC id {call.rpc_id!r}")

    # A batch repeating an RPC id tags each call with its 1-based position
    # so the response envelopes can be matched back; otherwise "generic"
    indexed = len({call.rpc_id for call in calls}) < len(calls)
    inner = []
    for position, call in enumerate(calls, start=1):
        args_json = encode_args(call.args, call.rpc_id)
        tag = str(position) if indexed else constants.ENVELOPE_GENERIC
        inner.append([call.rpc_id, args_json, None, tag])

    f_req_json = json.dumps([inner], separators=(",", ":"))

    # URL encode (safe='' encodes all characters including /)
    body_parts = [f"f.req={urllib.parse.quote(f_req_json, safe='')}"]
    if csrf_token:
        body_parts.append(f"at={urllib.parse.quote(csrf_token, safe='')}")
    # Trailing & matches the web app's format
    body = "&".join(body_parts) + "&"

    rpc_ids = tuple(dict.fromkeys(call.rpc_id for call in calls))
    params = {
        "rpcids": ",".join(rpc_ids),
        "source-path": calls[0].source_path,
        "bl": build_label,
        "hl": language,
        "_reqid": str(reqid),
        "rt": "c",
    }
    if session_id:
        params["f.sid"] = session_id

    return EncodedRequest(body=body, params=params, reqid=reqid, rpc_ids=rpc_ids, indexed=indexed)


def decode_request_body(body: str) -> dict[str, Any]:
    """Decode a URL-encoded request body back into its JSON structures.

    Used for debug logging; the CSRF value is never echoed.
    """
    result: dict[str, Any] = {}
    parsed = urllib.parse.parse_qs(body.rstrip("&"))

    if "f.req" in parsed:
        f_req_raw = parsed["f.req"][0]
        try:
            f_req = json.loads(f_req_raw)
        except json.JSONDecodeError:
            result["f.req"] = f_req_raw
        else:
            result["f.req"] = f_req
            calls = []
            if isinstance(f_req, list) and f_req and isinstance(f_req[0], list):
                for rpc_call in f_req[0]:
                    if isinstance(rpc_call, list) and len(rpc_call) >= 2:
                        params = rpc_call[1]
                        if isinstance(params, str):
                            try:
                                params = json.loads(params)
                            except json.JSONDecodeError:
                                pass
                        calls.append({"rpc_id": rpc_call[0], "params": params})
            result["calls"] = calls

    if "at" in parsed:
        result["at"] = "(csrf_token)"

    return result
