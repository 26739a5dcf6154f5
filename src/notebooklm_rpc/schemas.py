"""Declared layouts of NotebookLM messages.

Positions come from observed traffic. Notebook entry::

    [0] = "Title"
    [1] = [sources]
    [2] = "notebook-uuid"
    [3] = "emoji" or null
    [4] = null
    [5] = [metadata] where metadata[0] = ownership (1=mine, 2=shared_with_me),
          metadata[1] = shared flag, metadata[5] = modified, metadata[8] = created

Source entry: ``[[source_id], title, [metadata...], [null, status]]`` with the
source type at metadata[4] and ``[url]`` at metadata[7].
"""

from . import constants
from .decoder import FieldKind, FieldSpec, Schema

TIMESTAMP = Schema("Timestamp", [
    FieldSpec("seconds", 0, FieldKind.SCALAR, type=int),
    FieldSpec("nanos", 1, FieldKind.SCALAR, type=int),
])

SOURCE_ID = Schema("SourceId", [
    FieldSpec("source_id", 0, FieldKind.SCALAR, type=str),
])

DRIVE_DOCUMENT = Schema("DriveDocument", [
    FieldSpec("document_id", 0, FieldKind.SCALAR, type=str),
])

URL_INFO = Schema("UrlInfo", [
    FieldSpec("url", 0, FieldKind.SCALAR, type=str),
])

SOURCE_METADATA = Schema("SourceMetadata", [
    FieldSpec("drive_document", 0, FieldKind.MESSAGE, schema=DRIVE_DOCUMENT),
    FieldSpec("char_count", 1, FieldKind.SCALAR, type=int),
    FieldSpec("source_type", 4, FieldKind.ENUM, enum=constants.SOURCE_TYPES),
    FieldSpec("url_info", 7, FieldKind.MESSAGE, schema=URL_INFO),
])

SOURCE_SETTINGS = Schema("SourceSettings", [
    FieldSpec("status", 1, FieldKind.ENUM, enum=constants.SOURCE_STATUSES),
])

SOURCE = Schema("Source", [
    FieldSpec("source_id", 0, FieldKind.MESSAGE, schema=SOURCE_ID),
    FieldSpec("title", 1, FieldKind.SCALAR, type=str),
    FieldSpec("metadata", 2, FieldKind.MESSAGE, schema=SOURCE_METADATA),
    FieldSpec("settings", 3, FieldKind.MESSAGE, schema=SOURCE_SETTINGS),
])

NOTEBOOK_METADATA = Schema("NotebookMetadata", [
    FieldSpec("ownership", 0, FieldKind.ENUM, enum=constants.OWNERSHIP),
    FieldSpec("is_shared", 1, FieldKind.SCALAR, type=bool),
    FieldSpec("modified_at", 5, FieldKind.MESSAGE, schema=TIMESTAMP),
    FieldSpec("created_at", 8, FieldKind.MESSAGE, schema=TIMESTAMP),
])

NOTEBOOK = Schema("Notebook", [
    FieldSpec("title", 0, FieldKind.SCALAR, type=str),
    FieldSpec("sources", 1, FieldKind.REPEATED_MESSAGE, schema=SOURCE),
    FieldSpec("notebook_id", 2, FieldKind.SCALAR, type=str),
    FieldSpec("emoji", 3, FieldKind.SCALAR, type=str),
    FieldSpec("metadata", 5, FieldKind.MESSAGE, schema=NOTEBOOK_METADATA),
])

LIST_NOTEBOOKS_RESPONSE = Schema("ListNotebooksResponse", [
    FieldSpec("notebooks", 0, FieldKind.REPEATED_MESSAGE, schema=NOTEBOOK),
])

# get_notebook wraps the notebook in an outer array
GET_NOTEBOOK_RESPONSE = Schema("GetNotebookResponse", [
    FieldSpec("notebook", 0, FieldKind.MESSAGE, schema=NOTEBOOK),
])

ADD_SOURCE_RESPONSE = Schema("AddSourceResponse", [
    FieldSpec("sources", 0, FieldKind.REPEATED_MESSAGE, schema=SOURCE),
])

# Synced source: [[source_id], title, metadata, ...]
REFRESH_SOURCE_RESPONSE = Schema("RefreshSourceResponse", [
    FieldSpec("source", 0, FieldKind.MESSAGE, schema=SOURCE),
])

# true = fresh, false = stale
FRESHNESS_ENTRY = Schema("FreshnessEntry", [
    FieldSpec("is_fresh", 1, FieldKind.SCALAR, type=bool),
])

FRESHNESS_RESPONSE = Schema("FreshnessResponse", [
    FieldSpec("entry", 0, FieldKind.MESSAGE, schema=FRESHNESS_ENTRY),
])

NOTE_METADATA = Schema("NoteMetadata", [
    FieldSpec("note_type", 0, FieldKind.ENUM, enum=constants.NOTE_TYPES),
    FieldSpec("created_at", 2, FieldKind.MESSAGE, schema=TIMESTAMP),
])

# Details: [id, content, metadata, null, title]
NOTE = Schema("Note", [
    FieldSpec("note_id", 0, FieldKind.SCALAR, type=str),
    FieldSpec("content", 1, FieldKind.SCALAR, type=str),
    FieldSpec("metadata", 2, FieldKind.MESSAGE, schema=NOTE_METADATA),
    FieldSpec("title", 4, FieldKind.SCALAR, type=str),
])

# Deleted notes stay listed as tombstones: [uuid, null, 2]
NOTE_ENTRY = Schema("NoteEntry", [
    FieldSpec("note_id", 0, FieldKind.SCALAR, type=str),
    FieldSpec("note", 1, FieldKind.MESSAGE, schema=NOTE),
    FieldSpec("state", 2, FieldKind.SCALAR, type=int),
])

LIST_NOTES_RESPONSE = Schema("ListNotesResponse", [
    FieldSpec("entries", 0, FieldKind.REPEATED_MESSAGE, schema=NOTE_ENTRY),
])
