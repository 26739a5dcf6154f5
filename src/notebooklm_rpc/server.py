"""NotebookLM RPC MCP Server."""

import argparse
import functools
import json
import logging
import os
import secrets
import time
import urllib.parse
from typing import Any

from fastmcp import FastMCP
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from . import __version__
from .api_client import NotebookLMClient
from .auth import (
    REQUIRED_COOKIES,
    AuthTokens,
    get_cache_path,
    load_cached_tokens,
    parse_cookie_header,
    save_tokens_to_cache,
)
from .config import Settings
from .encoder import Call
from .exceptions import AuthExpiredError

# MCP request/response logger
mcp_logger = logging.getLogger("notebooklm_rpc.mcp")

# Loggers switched to DEBUG by --debug / NOTEBOOKLM_DEBUG
DEBUG_LOGGERS = ("notebooklm_rpc.mcp", "notebooklm_rpc.transport", "notebooklm_rpc.decoder", "notebooklm_rpc.auth")

mcp = FastMCP(
    name="notebooklm-rpc",
    instructions="""NotebookLM RPC - Manage NotebookLM notebooks, sources and notes.

**Auth:** If you get authentication errors, call save_auth_tokens with the Cookie header copied from the browser, then refresh_auth.
**Confirmation:** Tools with confirm param require user approval before setting confirm=True.""",
)


@mcp.custom_route("/health", methods=["GET"])
async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint for load balancers and monitoring."""
    return JSONResponse({
        "status": "healthy",
        "service": "notebooklm-rpc",
        "version": __version__,
    })


# Global state
_client: NotebookLMClient | None = None
_api_key: str | None = os.environ.get("NOTEBOOKLM_API_KEY")


def validate_api_key(request: Request) -> JSONResponse | None:
    """Validate API key from Authorization header.

    Returns None if auth passes, JSONResponse with error if auth fails.
    """
    if not _api_key:
        return None

    # Allow health check without auth (for load balancers)
    if request.url.path == "/health":
        return None

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return JSONResponse(
            {"error": "Missing or invalid Authorization header. Use 'Bearer <api_key>'"},
            status_code=401,
        )

    provided_key = auth_header[len("Bearer "):]
    if not secrets.compare_digest(provided_key, _api_key):
        return JSONResponse({"error": "Invalid API key"}, status_code=401)

    return None


class APIKeyAuthMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce API key authentication for HTTP transport."""

    async def dispatch(self, request: Request, call_next):
        auth_error = validate_api_key(request)
        if auth_error:
            return auth_error
        return await call_next(request)


def enable_debug_logging() -> None:
    """Attach a stderr handler and switch the package loggers to DEBUG."""
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    for name in DEBUG_LOGGERS:
        log = logging.getLogger(name)
        log.setLevel(logging.DEBUG)
        if not log.handlers:
            log.addHandler(handler)


def logged_tool():
    """Decorator that combines @mcp.tool() with MCP request/response logging."""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            tool_name = func.__name__
            if mcp_logger.isEnabledFor(logging.DEBUG):
                params = {k: v for k, v in kwargs.items() if v is not None}
                mcp_logger.debug("MCP Request: %s(%s)", tool_name, json.dumps(params, default=str))

            result = func(*args, **kwargs)

            if mcp_logger.isEnabledFor(logging.DEBUG):
                result_str = json.dumps(result, default=str)
                if len(result_str) > 1000:
                    result_str = result_str[:1000] + "..."
                mcp_logger.debug("MCP Response: %s -> %s", tool_name, result_str)

            return result
        return mcp.tool()(wrapper)
    return decorator


def get_client() -> NotebookLMClient:
    """Get or create the API client.

    Tries environment variables first, falls back to cached tokens.
    """
    global _client
    if _client is None:
        settings = Settings.from_env()
        if settings.debug:
            enable_debug_logging()
        _client = NotebookLMClient.from_settings(settings)
    return _client


def reset_client() -> None:
    """Drop the cached client so the next call re-reads settings."""
    global _client
    if _client is not None:
        _client.close()
    _client = None


def _confirmation_required(warning: str) -> dict[str, Any]:
    return {
        "status": "error",
        "error": "Deletion not confirmed. You must ask the user to confirm "
                 "before deleting. Set confirm=True only after user approval.",
        "warning": warning,
    }


# =============================================================================
# Auth
# =============================================================================


@logged_tool()
def refresh_auth() -> dict[str, Any]:
    """Reload auth tokens from the disk cache, or re-derive page tokens from current cookies.

    Call this after save_auth_tokens or when calls start failing with auth errors.
    """
    try:
        if load_cached_tokens():
            reset_client()
            get_client()
            return {
                "status": "success",
                "message": "Auth tokens reloaded from disk cache.",
            }

        client = get_client()
        session = client.transport.session
        session.refresh(stale=session.current())
        return {
            "status": "success",
            "message": "CSRF token and session ID re-extracted from the NotebookLM page.",
        }
    except AuthExpiredError as e:
        return {
            "status": "error",
            "error": f"{e} Save fresh cookies with save_auth_tokens.",
        }
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
def save_auth_tokens(
    cookies: str,
    csrf_token: str = "",
    session_id: str = "",
    request_body: str = "",
    request_url: str = "",
) -> dict[str, Any]:
    """Save NotebookLM cookies copied from the browser.

    Args:
        cookies: Cookie header from Chrome DevTools
        csrf_token: Optional - auto-extracted from the page when empty
        session_id: Optional - auto-extracted from the page when empty
        request_body: Optional batchexecute request body; contains the CSRF token (at=...)
        request_url: Optional batchexecute request URL; contains the session ID (f.sid=...)
    """
    try:
        all_cookies = parse_cookie_header(cookies)
        missing = [c for c in REQUIRED_COOKIES if c not in all_cookies]
        if missing:
            return {
                "status": "error",
                "error": f"Missing required cookies: {missing}",
            }

        # Request body format: f.req=...&at=<csrf_token>&
        if not csrf_token and request_body:
            values = urllib.parse.parse_qs(request_body).get("at")
            if values:
                csrf_token = values[0]

        # URL format: ...?f.sid=<session_id>&...
        if not session_id and request_url:
            query = urllib.parse.urlparse(request_url).query
            values = urllib.parse.parse_qs(query).get("f.sid")
            if values:
                session_id = values[0]

        tokens = AuthTokens(
            cookies=all_cookies,
            csrf_token=csrf_token,
            session_id=session_id,
            extracted_at=time.time(),
        )
        cache_path = save_tokens_to_cache(tokens)
        reset_client()

        if csrf_token and session_id:
            token_msg = "CSRF token and session ID extracted from network request."
        else:
            token_msg = "Missing page tokens will be auto-extracted on first API call."

        return {
            "status": "success",
            "message": f"Saved {len(all_cookies)} cookies. {token_msg}",
            "cache_path": str(cache_path or get_cache_path()),
            "extracted_csrf": bool(csrf_token),
            "extracted_session_id": bool(session_id),
        }
    except Exception as e:
        return {"status": "error", "error": str(e)}


# =============================================================================
# Notebooks
# =============================================================================


@logged_tool()
def notebook_list(max_results: int = 100) -> dict[str, Any]:
    """List all notebooks.

    Args:
        max_results: Maximum number of notebooks to return (default: 100)
    """
    try:
        client = get_client()
        notebooks = client.list_notebooks()

        owned_count = sum(1 for nb in notebooks if nb.is_owned)
        shared_by_me_count = sum(1 for nb in notebooks if nb.is_owned and nb.is_shared)

        return {
            "status": "success",
            "count": len(notebooks),
            "owned_count": owned_count,
            "shared_count": len(notebooks) - owned_count,
            "shared_by_me_count": shared_by_me_count,
            "notebooks": [
                {
                    "id": nb.id,
                    "title": nb.title,
                    "emoji": nb.emoji,
                    "source_count": nb.source_count,
                    "url": nb.url,
                    "ownership": nb.ownership,
                    "is_shared": nb.is_shared,
                    "created_at": nb.created_at,
                    "modified_at": nb.modified_at,
                }
                for nb in notebooks[:max_results]
            ],
        }
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
def notebook_get(notebook_id: str) -> dict[str, Any]:
    """Get notebook details with sources.

    Args:
        notebook_id: Notebook UUID
    """
    try:
        notebook = get_client().get_notebook(notebook_id)
        if notebook is None:
            return {"status": "error", "error": f"Notebook {notebook_id} not found"}
        return {
            "status": "success",
            "notebook": {
                "id": notebook.id,
                "title": notebook.title,
                "emoji": notebook.emoji,
                "url": notebook.url,
                "ownership": notebook.ownership,
                "is_shared": notebook.is_shared,
                "sources": notebook.sources,
            },
            "created_at": notebook.created_at,
            "modified_at": notebook.modified_at,
        }
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
def notebook_create(title: str = "") -> dict[str, Any]:
    """Create a new notebook.

    Args:
        title: Optional title for the notebook
    """
    try:
        notebook = get_client().create_notebook(title=title)
        if notebook:
            return {
                "status": "success",
                "notebook": {
                    "id": notebook.id,
                    "title": notebook.title,
                    "url": notebook.url,
                },
            }
        return {"status": "error", "error": "Failed to create notebook"}
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
def notebook_rename(notebook_id: str, new_title: str) -> dict[str, Any]:
    """Rename a notebook.

    Args:
        notebook_id: Notebook UUID
        new_title: New title
    """
    try:
        if get_client().rename_notebook(notebook_id, new_title):
            return {
                "status": "success",
                "notebook": {"id": notebook_id, "title": new_title},
            }
        return {"status": "error", "error": "Failed to rename notebook"}
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
def notebook_delete(notebook_id: str, confirm: bool = False) -> dict[str, Any]:
    """Delete notebook permanently. IRREVERSIBLE. Requires confirm=True.

    Args:
        notebook_id: Notebook UUID
        confirm: Must be True after user approval
    """
    if not confirm:
        return _confirmation_required(
            "This action is IRREVERSIBLE. The notebook and all its sources will be permanently deleted."
        )
    try:
        if get_client().delete_notebooks([notebook_id]):
            return {
                "status": "success",
                "message": f"Notebook {notebook_id} has been permanently deleted.",
            }
        return {"status": "error", "error": "Failed to delete notebook"}
    except Exception as e:
        return {"status": "error", "error": str(e)}


# =============================================================================
# Sources
# =============================================================================


@logged_tool()
def source_list(notebook_id: str) -> dict[str, Any]:
    """List the sources of a notebook with type, URL and processing status.

    Args:
        notebook_id: Notebook UUID
    """
    try:
        sources = get_client().list_sources(notebook_id)
        return {
            "status": "success",
            "notebook_id": notebook_id,
            "count": len(sources),
            "sources": sources,
        }
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
def source_add_url(notebook_id: str, url: str) -> dict[str, Any]:
    """Add URL (website or YouTube) as source.

    Args:
        notebook_id: Notebook UUID
        url: URL to add
    """
    try:
        result = get_client().add_url_source(notebook_id, url=url)
        if result and result.get("status") == "timeout":
            return result
        if result:
            return {"status": "success", "source": result}
        return {"status": "error", "error": "Failed to add URL source"}
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
def source_add_text(notebook_id: str, text: str, title: str = "Pasted Text") -> dict[str, Any]:
    """Add pasted text as source.

    Args:
        notebook_id: Notebook UUID
        text: Text content to add
        title: Optional title
    """
    try:
        result = get_client().add_text_source(notebook_id, text=text, title=title)
        if result and result.get("status") == "timeout":
            return result
        if result:
            return {"status": "success", "source": result}
        return {"status": "error", "error": "Failed to add text source"}
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
def source_add_file(notebook_id: str, file_path: str) -> dict[str, Any]:
    """Upload a local file (PDF, text, image, audio) as source.

    Args:
        notebook_id: Notebook UUID
        file_path: Path to the file on the server's filesystem
    """
    try:
        result = get_client().add_file_source(notebook_id, file_path)
        if result and result.get("status") == "timeout":
            return result
        if result:
            return {"status": "success", "source": result}
        return {"status": "error", "error": "Failed to add file source"}
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
def source_delete(notebook_id: str, source_ids: list[str], confirm: bool = False) -> dict[str, Any]:
    """Delete sources permanently. IRREVERSIBLE. Requires confirm=True.

    Args:
        notebook_id: Notebook UUID the sources belong to
        source_ids: Source UUIDs to delete
        confirm: Must be True after user approval
    """
    if not confirm:
        return _confirmation_required(
            "This action is IRREVERSIBLE. The sources will be permanently deleted from the notebook."
        )
    try:
        if get_client().delete_sources(notebook_id, source_ids):
            return {
                "status": "success",
                "message": f"Deleted {len(source_ids)} source(s) from notebook {notebook_id}.",
            }
        return {"status": "error", "error": "Failed to delete sources"}
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
def source_check_freshness(source_id: str) -> dict[str, Any]:
    """Check whether a Drive source is in sync with its document.

    Args:
        source_id: Source UUID
    """
    try:
        is_fresh = get_client().check_source_freshness(source_id)
        return {
            "status": "success",
            "source_id": source_id,
            "is_fresh": is_fresh,
            "needs_sync": is_fresh is False,
        }
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
def source_refresh(source_id: str) -> dict[str, Any]:
    """Re-import a Drive source from its current document.

    Args:
        source_id: Source UUID
    """
    try:
        source = get_client().refresh_source(source_id)
        if source:
            return {"status": "success", "source": source}
        return {"status": "error", "error": "Failed to refresh source"}
    except Exception as e:
        return {"status": "error", "error": str(e)}


# =============================================================================
# Notes
# =============================================================================


def _note_dict(note) -> dict[str, Any]:
    return {
        "id": note.id,
        "title": note.title,
        "content": note.content,
        "note_type": note.note_type,
        "created_at": note.created_at,
    }


@logged_tool()
def note_list(notebook_id: str) -> dict[str, Any]:
    """List the notes of a notebook.

    Args:
        notebook_id: Notebook UUID
    """
    try:
        notes = get_client().list_notes(notebook_id)
        return {
            "status": "success",
            "count": len(notes),
            "notes": [_note_dict(n) for n in notes],
        }
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
def note_create(notebook_id: str, title: str, content: str = "") -> dict[str, Any]:
    """Create a text note.

    Args:
        notebook_id: Notebook UUID
        title: Note title
        content: Note body
    """
    try:
        note = get_client().create_note(notebook_id, title=title, content=content)
        if note:
            return {"status": "success", "note": _note_dict(note)}
        return {"status": "error", "error": "Failed to create note"}
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
def note_update(notebook_id: str, note_id: str, content: str, title: str) -> dict[str, Any]:
    """Replace a note's content and title.

    Args:
        notebook_id: Notebook UUID
        note_id: Note UUID
        content: New body
        title: New title
    """
    try:
        note = get_client().update_note(notebook_id, note_id, content=content, title=title)
        if note:
            return {"status": "success", "note": _note_dict(note)}
        return {"status": "error", "error": "Failed to update note"}
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
def note_delete(notebook_id: str, note_ids: list[str], confirm: bool = False) -> dict[str, Any]:
    """Delete notes permanently. IRREVERSIBLE. Requires confirm=True.

    Args:
        notebook_id: Notebook UUID
        note_ids: Note UUIDs to delete
        confirm: Must be True after user approval
    """
    if not confirm:
        return _confirmation_required("This action is IRREVERSIBLE. The notes will be permanently deleted.")
    try:
        get_client().delete_notes(notebook_id, note_ids)
        return {
            "status": "success",
            "message": f"Deleted {len(note_ids)} note(s) from notebook {notebook_id}.",
        }
    except Exception as e:
        return {"status": "error", "error": str(e)}


# =============================================================================
# Raw RPC
# =============================================================================


@logged_tool()
def rpc_raw(rpc_id: str, args: list, notebook_id: str | None = None) -> dict[str, Any]:
    """Run an arbitrary batchexecute RPC and return its undecoded payload.

    Args:
        rpc_id: Six-character RPC identifier
        args: Positional argument array; null marks an absent position
        notebook_id: Optional notebook the call is scoped to (sets source-path)
    """
    try:
        payload = get_client().transport.execute_raw(Call(rpc_id, args, notebook_id))
        return {"status": "success", "rpc_id": rpc_id, "payload": payload}
    except Exception as e:
        return {"status": "error", "error": str(e)}


def _print_http_banner(args, url: str) -> None:
    print(f"Starting NotebookLM RPC server ({args.transport.upper()}) on {url}")
    print(f"Health check: http://{args.host}:{args.port}/health")
    if _api_key:
        print("API key authentication: ENABLED")
    else:
        print("WARNING: No API key set. Server is publicly accessible!")
        print("         Use --api-key or NOTEBOOKLM_API_KEY to secure your server.")


def main():
    """Run the MCP server.

    Supports multiple transports:
    - stdio (default): For desktop apps
    - http: Streamable HTTP for network access
    - sse: Legacy SSE transport

    Configuration via CLI args or environment variables.
    """
    parser = argparse.ArgumentParser(
        description="NotebookLM RPC MCP Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  NOTEBOOKLM_MCP_TRANSPORT     Transport type (stdio, http, sse)
  NOTEBOOKLM_MCP_HOST          Host to bind (default: 127.0.0.1)
  NOTEBOOKLM_MCP_PORT          Port to listen on (default: 8000)
  NOTEBOOKLM_MCP_PATH          MCP endpoint path (default: /mcp)
  NOTEBOOKLM_DEBUG             Enable debug logging for MCP + API traffic (true/false)
  NOTEBOOKLM_API_KEY           Bearer key required on HTTP/SSE requests

Examples:
  notebooklm-rpc                              # Default stdio transport
  notebooklm-rpc --transport http             # HTTP on localhost:8000
  notebooklm-rpc --transport http --port 3000 # HTTP on custom port
  notebooklm-rpc --debug                      # Log MCP calls + batchexecute traffic
        """,
    )
    parser.add_argument(
        "--transport", "-t",
        choices=["stdio", "http", "sse"],
        default=os.environ.get("NOTEBOOKLM_MCP_TRANSPORT", "stdio"),
        help="Transport protocol (default: stdio)",
    )
    parser.add_argument(
        "--host", "-H",
        default=os.environ.get("NOTEBOOKLM_MCP_HOST", "127.0.0.1"),
        help="Host to bind for HTTP/SSE (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=int(os.environ.get("NOTEBOOKLM_MCP_PORT", "8000")),
        help="Port for HTTP/SSE transport (default: 8000)",
    )
    parser.add_argument(
        "--path",
        default=os.environ.get("NOTEBOOKLM_MCP_PATH", "/mcp"),
        help="MCP endpoint path for HTTP (default: /mcp)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=os.environ.get("NOTEBOOKLM_DEBUG", "").lower() == "true",
        help="Enable debug logging (MCP tool calls + batchexecute requests/responses)",
    )
    parser.add_argument(
        "--api-key",
        default=os.environ.get("NOTEBOOKLM_API_KEY"),
        help="API key for authentication (also via NOTEBOOKLM_API_KEY env var)",
    )
    args = parser.parse_args()

    global _api_key
    _api_key = args.api_key

    if args.debug:
        logging.basicConfig(
            level=logging.WARNING,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        enable_debug_logging()

    if args.transport in ("http", "sse"):
        if args.transport == "http":
            _print_http_banner(args, f"http://{args.host}:{args.port}{args.path}")
        else:
            _print_http_banner(args, f"http://{args.host}:{args.port}/sse")

        if _api_key:
            import uvicorn

            if args.transport == "http":
                base_app = mcp.http_app(path=args.path)
            else:
                base_app = mcp.http_app(transport="sse")
            uvicorn.run(APIKeyAuthMiddleware(base_app), host=args.host, port=args.port)
        elif args.transport == "http":
            mcp.run(transport="http", host=args.host, port=args.port, path=args.path)
        else:
            mcp.run(transport="sse", host=args.host, port=args.port)
    else:
        # stdio should be silent
        mcp.run()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
