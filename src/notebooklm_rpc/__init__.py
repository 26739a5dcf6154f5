"""Client for NotebookLM's batchexecute RPC transport with a positional schema decoder."""

__version__ = "0.1.0"

from .auth import AuthTokens, Session
from .decoder import FieldKind, FieldSpec, Schema, UnknownEnum, decode
from .encoder import Call
from .exceptions import (
    AuthExpiredError,
    BatchExecuteError,
    CancelledError,
    EncodingError,
    FramingError,
    RpcServerError,
    SchemaMismatchError,
    TransportError,
)
from .transport import BatchExecuteTransport, CancelToken, TransportConfig

__all__ = [
    "AuthExpiredError",
    "AuthTokens",
    "BatchExecuteError",
    "BatchExecuteTransport",
    "Call",
    "CancelToken",
    "CancelledError",
    "EncodingError",
    "FieldKind",
    "FieldSpec",
    "FramingError",
    "RpcServerError",
    "Schema",
    "SchemaMismatchError",
    "Session",
    "TransportConfig",
    "TransportError",
    "UnknownEnum",
    "decode",
]
