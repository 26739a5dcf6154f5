"""NotebookLM domain client (notebooklm.google.com).

Thin layer over ``BatchExecuteTransport``: each method builds a positional
argument tree, runs the call and maps the decoded record onto a small
domain dataclass.
"""

import base64
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO

import httpx

from . import constants
from . import schemas
from .auth import AuthTokens, CachedTokenRefresher, PageTokenRefresher, Session, chain_refreshers
from .config import Settings
from .decoder import UnknownEnum, decode, parse_timestamp
from .encoder import Call
from .exceptions import TransportError
from .transport import SOURCE_ADD_TIMEOUT, BatchExecuteTransport, TransportConfig


@dataclass
class Notebook:
    """Represents a NotebookLM notebook."""

    id: str
    title: str
    source_count: int
    sources: list[dict] = field(default_factory=list)
    emoji: str = ""
    is_owned: bool = True     # True if owned by user, False if shared with user
    is_shared: bool = False   # True if shared with others (for owned notebooks)
    created_at: str | None = None   # ISO format timestamp
    modified_at: str | None = None  # ISO format timestamp

    @property
    def url(self) -> str:
        return f"{constants.BASE_URL}/notebook/{self.id}"

    @property
    def ownership(self) -> str:
        """Return human-readable ownership status."""
        if self.is_owned:
            return "owned"
        return "shared_with_me"


@dataclass
class Note:
    """A note (text note or saved mind map) inside a notebook."""

    id: str
    title: str
    content: str
    note_type: str = "text"
    created_at: str | None = None


def _timestamp(record: Any) -> str | None:
    if record is None:
        return None
    return parse_timestamp([record.seconds, record.nanos])


def _enum_name(value: Any) -> str:
    if value is None:
        return "unknown"
    return str(value) if isinstance(value, UnknownEnum) else value


def _source_dict(source: Any) -> dict:
    metadata = source.metadata
    source_type = None
    source_type_name = "unknown"
    url = None
    drive_doc_id = None
    if metadata is not None:
        source_type_name = _enum_name(metadata.source_type)
        if isinstance(metadata.source_type, UnknownEnum):
            source_type = metadata.source_type.raw
        elif metadata.source_type is not None:
            source_type = constants.SOURCE_TYPES.get_code(metadata.source_type)
        if metadata.url_info is not None:
            url = metadata.url_info.url or None
        if metadata.drive_document is not None:
            drive_doc_id = metadata.drive_document.document_id or None

    return {
        "id": source.source_id.source_id if source.source_id else None,
        "title": source.title or "Untitled",
        "source_type": source_type,
        "source_type_name": source_type_name,
        "url": url,
        "drive_doc_id": drive_doc_id,
        "status": _enum_name(source.settings.status) if source.settings else "unknown",
    }


# File signatures, checked before the file name
_MAGIC_NUMBERS = (
    (b"%PDF-", "application/pdf"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"ID3", "audio/mpeg"),
)


def detect_content_type(content: bytes, filename: str = "") -> str:
    """Guess the MIME type of an upload from its bytes, then its file name.

    Undecodable content without a known signature or extension is
    ``application/octet-stream``; valid UTF-8 without NUL bytes is text.
    """
    for magic, content_type in _MAGIC_NUMBERS:
        if content.startswith(magic):
            return content_type
    guessed, _ = mimetypes.guess_type(filename)
    if guessed:
        return guessed
    if b"\x00" not in content[:8192]:
        try:
            content.decode("utf-8")
        except UnicodeDecodeError:
            pass
        else:
            return "text/plain; charset=utf-8"
    return "application/octet-stream"


def _notebook_from_record(record: Any) -> Notebook:
    sources = [_source_dict(s) for s in record.sources]
    metadata = record.metadata
    is_owned = True
    is_shared = False
    created_at = None
    modified_at = None
    if metadata is not None:
        # Default to owned when the ownership code is missing
        is_owned = metadata.ownership in (None, "owned")
        is_shared = metadata.is_shared
        created_at = _timestamp(metadata.created_at)
        modified_at = _timestamp(metadata.modified_at)

    return Notebook(
        id=record.notebook_id,
        title=record.title or "Untitled",
        source_count=len(sources),
        sources=sources,
        emoji=record.emoji,
        is_owned=is_owned,
        is_shared=is_shared,
        created_at=created_at,
        modified_at=modified_at,
    )


def _note_from_record(record: Any) -> Note:
    note_type = "text"
    created_at = None
    if record.metadata is not None:
        note_type = _enum_name(record.metadata.note_type) if record.metadata.note_type is not None else "text"
        created_at = _timestamp(record.metadata.created_at)
    return Note(
        id=record.note_id,
        title=record.title,
        content=record.content,
        note_type=note_type,
        created_at=created_at,
    )


class NotebookLMClient:
    """Client for the NotebookLM internal API."""

    def __init__(self, transport: BatchExecuteTransport):
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "NotebookLMClient":
        """Build session and transport from ``Settings``.

        Auth rejections are recovered by re-deriving page tokens from the
        current cookies, then by reloading cookies from the token cache.
        """
        tokens = AuthTokens(
            cookies=settings.cookies,
            csrf_token=settings.csrf_token,
            session_id=settings.session_id,
            bearer_token=settings.bearer_token,
            build_label=settings.build_label,
        )
        page_refresher = PageTokenRefresher(base_url=settings.base_url, persist=settings.persist_tokens)
        session = Session(
            tokens,
            refresher=chain_refreshers(page_refresher, CachedTokenRefresher(page_refresher)),
        )
        config = TransportConfig(
            base_url=settings.base_url,
            timeout=settings.timeout,
            max_retries=settings.max_retries,
            build_label=settings.build_label or constants.DEFAULT_BUILD_LABEL,
        )
        return cls(BatchExecuteTransport(session, config))

    def close(self) -> None:
        """Close the HTTP client."""
        self.transport.close()

    def raw_call(self, rpc_id: str, args: list, notebook_id: str | None = None) -> Any:
        """Run an arbitrary RPC and return its undecoded payload."""
        return self.transport.execute_raw(Call(rpc_id, args, notebook_id))

    # =========================================================================
    # Notebook Operations
    # =========================================================================

    def list_notebooks(self) -> list[Notebook]:
        """List all notebooks."""
        # [null, 1, null, [2]] - params for list notebooks
        response = self.transport.execute(
            Call(constants.RPC_LIST_NOTEBOOKS, [None, 1, None, [2]]),
            schemas.LIST_NOTEBOOKS_RESPONSE,
        )
        return [_notebook_from_record(nb) for nb in response.notebooks if nb.notebook_id]

    def get_notebook(self, notebook_id: str) -> Notebook | None:
        """Get notebook details."""
        response = self.transport.execute(
            Call(constants.RPC_GET_NOTEBOOK, [notebook_id, None, [2], None, 0], notebook_id),
            schemas.GET_NOTEBOOK_RESPONSE,
        )
        if response.notebook is None:
            return None
        return _notebook_from_record(response.notebook)

    def create_notebook(self, title: str = "") -> Notebook | None:
        """Create a new notebook."""
        params = [title, None, None, [2], constants.PROJECT_OPTIONS]
        record = self.transport.execute(Call(constants.RPC_CREATE_NOTEBOOK, params), schemas.NOTEBOOK)
        if not record.notebook_id:
            return None
        notebook = _notebook_from_record(record)
        notebook.title = record.title or title or "Untitled notebook"
        return notebook

    def rename_notebook(self, notebook_id: str, new_title: str) -> bool:
        """Rename a notebook."""
        params = [notebook_id, [[None, None, None, [None, new_title]]]]
        result = self.transport.execute_raw(Call(constants.RPC_RENAME_NOTEBOOK, params, notebook_id))
        return result is not None

    def delete_notebooks(self, notebook_ids: list[str]) -> bool:
        """Delete notebooks permanently.

        WARNING: This action is IRREVERSIBLE. The notebooks and all their
        sources, notes, and generated content will be permanently deleted.
        """
        result = self.transport.execute_raw(Call(constants.RPC_DELETE_NOTEBOOK, [list(notebook_ids), [2]]))
        return result is not None

    # =========================================================================
    # Source Operations
    # =========================================================================

    def list_sources(self, notebook_id: str) -> list[dict]:
        """Get all sources of a notebook with their type information."""
        notebook = self.get_notebook(notebook_id)
        return notebook.sources if notebook else []

    def _add_source(self, notebook_id: str, source_data: list) -> dict | None:
        params = [[source_data], notebook_id, [2], constants.PROJECT_OPTIONS]
        try:
            # Adding is not idempotent, so a timed-out call is never replayed
            response = self.transport.execute(
                Call(constants.RPC_ADD_SOURCE, params, notebook_id),
                schemas.ADD_SOURCE_RESPONSE,
                timeout=SOURCE_ADD_TIMEOUT,
                retries=0,
            )
        except TransportError as e:
            if not isinstance(e.__cause__, httpx.TimeoutException):
                raise
            # Large pages may take longer than the timeout but still succeed on backend
            return {
                "status": "timeout",
                "message": f"Operation timed out after {SOURCE_ADD_TIMEOUT}s but may have succeeded. Check notebook sources before retrying.",
            }

        if not response.sources:
            return None
        source = response.sources[0]
        return {
            "id": source.source_id.source_id if source.source_id else None,
            "title": source.title,
        }

    def add_url_source(self, notebook_id: str, url: str) -> dict | None:
        """Add a URL (website or YouTube) as a source to a notebook."""
        # URL position differs for YouTube vs regular websites:
        # - YouTube: position 7
        # - Regular websites: position 2
        is_youtube = "youtube.com" in url.lower() or "youtu.be" in url.lower()
        if is_youtube:
            source_data = [None, None, None, None, None, None, None, [url], None, None, 1]
        else:
            source_data = [None, None, [url], None, None, None, None, None, None, None, 1]
        return self._add_source(notebook_id, source_data)

    def add_text_source(self, notebook_id: str, text: str, title: str = "Pasted Text") -> dict | None:
        """Add pasted text as a source to a notebook."""
        source_data = [None, [title, text], None, 2, None, None, None, None, None, None, 1]
        result = self._add_source(notebook_id, source_data)
        if result and "id" in result and not result["title"]:
            result["title"] = title
        return result

    def add_file_source(self, notebook_id: str, file_path: str | Path) -> dict | None:
        """Upload a local file as a source."""
        path = Path(file_path)
        if not path.is_file():
            raise ValueError(f"File not found or not a regular file: {path}")
        with path.open("rb") as f:
            return self.add_reader_source(notebook_id, f, path.name)

    def add_reader_source(self, notebook_id: str, reader: BinaryIO, filename: str) -> dict | None:
        """Upload the contents of a binary stream as a source.

        Text content is added as a pasted-text source titled ``filename``;
        anything else is sent base64-encoded with its detected MIME type.
        """
        content = reader.read()
        if not content:
            raise ValueError(f"File is empty: {filename}")

        content_type = detect_content_type(content, filename)
        if content_type.startswith("text/"):
            return self.add_text_source(notebook_id, content.decode("utf-8", errors="replace"), title=filename)

        encoded = base64.b64encode(content).decode("ascii")
        return self.add_base64_source(notebook_id, encoded, filename, content_type)

    def add_base64_source(self, notebook_id: str, content: str, filename: str, content_type: str) -> dict | None:
        """Add already base64-encoded file content as a source."""
        source_data = [content, filename, content_type, "base64"]
        result = self._add_source(notebook_id, source_data)
        if result and "id" in result and not result["title"]:
            result["title"] = filename
        return result

    def refresh_source(self, source_id: str) -> dict | None:
        """Re-import a Drive source from its current document."""
        response = self.transport.execute(
            Call(constants.RPC_REFRESH_SOURCE, [None, [source_id], [2]]),
            schemas.REFRESH_SOURCE_RESPONSE,
        )
        if response.source is None:
            return None
        return _source_dict(response.source)

    def delete_sources(self, notebook_id: str, source_ids: list[str]) -> bool:
        """Delete sources from a notebook permanently."""
        # Note: Extra nesting compared to delete_notebooks
        params = [[[sid] for sid in source_ids], [2]]
        result = self.transport.execute_raw(Call(constants.RPC_DELETE_SOURCE, params, notebook_id))
        return result is not None

    def check_source_freshness(self, source_id: str) -> bool | None:
        """Report the service's freshness flag for a Drive source.

        Returns True if fresh, False if stale, None when the service gives no flag.
        """
        response = self.transport.execute(
            Call(constants.RPC_CHECK_FRESHNESS, [None, [source_id], [2]]),
            schemas.FRESHNESS_RESPONSE,
        )
        if response.entry is None:
            return None
        return response.entry.is_fresh

    # =========================================================================
    # Note Operations
    # =========================================================================

    def list_notes(self, notebook_id: str) -> list[Note]:
        """List the notes of a notebook, skipping deleted (tombstone) entries."""
        response = self.transport.execute(
            Call(constants.RPC_LIST_NOTES, [notebook_id], notebook_id),
            schemas.LIST_NOTES_RESPONSE,
        )
        return [_note_from_record(entry.note) for entry in response.entries if entry.note is not None]

    def create_note(self, notebook_id: str, title: str, content: str = "") -> Note | None:
        """Create a text note."""
        params = [notebook_id, content, [constants.NOTE_TYPE_TEXT], None, title]
        raw = self.transport.execute_raw(Call(constants.RPC_CREATE_NOTE, params, notebook_id))
        # Response is nested: [[note_id, content, metadata, null, title]]
        if isinstance(raw, list) and raw and isinstance(raw[0], list):
            raw = raw[0]
        record = decode(raw, schemas.NOTE, diagnostics=self.transport.config.logger)
        if not record.note_id:
            return None
        return _note_from_record(record)

    def update_note(self, notebook_id: str, note_id: str, content: str, title: str) -> Note | None:
        """Replace a note's content and title."""
        params = [notebook_id, note_id, [[[content, title, []]]]]
        raw = self.transport.execute_raw(Call(constants.RPC_UPDATE_NOTE, params, notebook_id))
        if isinstance(raw, list) and raw and isinstance(raw[0], list):
            raw = raw[0]
        record = decode(raw, schemas.NOTE, diagnostics=self.transport.config.logger)
        if not record.note_id:
            return None
        return _note_from_record(record)

    def delete_notes(self, notebook_id: str, note_ids: list[str]) -> bool:
        """Delete notes from a notebook."""
        params = [notebook_id, None, list(note_ids), [2]]
        self.transport.execute_raw(Call(constants.RPC_DELETE_NOTES, params, notebook_id))
        return True
