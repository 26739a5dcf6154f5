"""Error taxonomy for the batchexecute client.

Every error carries enough context (RPC id, byte offset, field path) to be
diagnosed from the message alone.
"""


class BatchExecuteError(Exception):
    """Base class for all client errors."""
    pass


class EncodingError(BatchExecuteError):
    """An argument tree could not be represented in the wire format."""

    def __init__(self, message: str, rpc_id: str | None = None):
        self.rpc_id = rpc_id
        if rpc_id:
            message = f"{rpc_id}: {message}"
        super().__init__(message)


class TransportError(BatchExecuteError):
    """HTTP or network failure (after retries were exhausted)."""

    def __init__(self, message: str, status_code: int | None = None, snippet: str = "", rpc_id: str | None = None):
        self.status_code = status_code
        self.snippet = snippet
        self.rpc_id = rpc_id
        parts = [message]
        if status_code is not None:
            parts.append(f"HTTP {status_code}")
        if rpc_id:
            parts.append(f"rpc={rpc_id}")
        if snippet:
            parts.append(f"body={snippet!r}")
        super().__init__(" | ".join(parts))


class FramingError(BatchExecuteError):
    """The response stream does not follow the chunked framing protocol."""

    def __init__(self, message: str, offset: int | None = None, rpc_id: str | None = None):
        self.offset = offset
        self.rpc_id = rpc_id
        if offset is not None:
            message = f"{message} (at byte {offset})"
        if rpc_id:
            message = f"{rpc_id}: {message}"
        super().__init__(message)


class AuthExpiredError(BatchExecuteError):
    """Credentials were rejected and could not be refreshed.

    The caller has to re-authenticate out-of-band (run the auth flow or
    save fresh cookies).
    """
    pass


# Kept for callers written against the original client
AuthenticationError = AuthExpiredError


class RpcServerError(BatchExecuteError):
    """The service answered the call with an error status instead of a payload."""

    def __init__(self, rpc_id: str, code: int, name: str = "unknown"):
        self.rpc_id = rpc_id
        self.code = code
        self.name = name
        super().__init__(f"RPC {rpc_id} failed with status {code} ({name})")


class SchemaMismatchError(BatchExecuteError):
    """A payload value is structurally incompatible with its declared field."""

    def __init__(self, path: str, index: int | None, expected: str, actual: str):
        self.path = path
        self.index = index
        self.expected = expected
        self.actual = actual
        where = path or "<root>"
        if index is not None:
            where = f"{where} (index {index})"
        super().__init__(f"{where}: expected {expected}, got {actual}")


class CancelledError(BatchExecuteError):
    """The caller aborted the call before a payload was decoded."""
    pass
