"""
Constants and mappings for the NotebookLM batchexecute API.

This module is the Single Source of Truth for RPC identifiers, wire-format
markers and integer code tables. The code tables double as enum tables for
the positional decoder.
"""


class CodeMapper:
    """
    Bidirectional mapping for API codes.

    Handles strict validation, normalization (case-insensitivity), and
    human-readable error messages.
    """

    def __init__(self, mapping: dict[str, int], unknown_label: str = "unknown"):
        # Store as lower-case keys for case-insensitive lookup
        self._name_to_code: dict[str, int] = {k.lower(): v for k, v in mapping.items()}
        # Reverse mapping for code -> name lookup
        self._code_to_name: dict[int, str] = {v: k for k, v in mapping.items()}
        self._unknown_label = unknown_label
        # Keep original display names (keys) sorted for error messages
        self._display_names = sorted(mapping.keys())

    def get_code(self, name: str) -> int:
        """
        Get integer code for a string name.

        Args:
            name: The string name (case-insensitive).

        Returns:
            The corresponding integer code.

        Raises:
            ValueError: If the name is unknown.
        """
        if not name:
            raise ValueError(f"Invalid name: '{name}'. Must be one of: {self.options_str}")

        code = self._name_to_code.get(name.lower())
        if code is None:
            raise ValueError(f"Unknown name '{name}'. Must be one of: {self.options_str}")
        return code

    def get_name(self, code: int | None) -> str:
        """
        Get string name for an integer code.

        Returns the 'unknown_label' if the code is not in the table.
        """
        if code is None:
            return self._unknown_label
        return self._code_to_name.get(code, self._unknown_label)

    def lookup(self, code: int) -> str | None:
        """Return the name for a code, or None when the table doesn't know it."""
        return self._code_to_name.get(code)

    def __contains__(self, code: object) -> bool:
        return code in self._code_to_name

    @property
    def unknown_label(self) -> str:
        return self._unknown_label

    @property
    def options_str(self) -> str:
        """Return comma-separated list of valid options."""
        return ", ".join(self._display_names)

    @property
    def names(self) -> list[str]:
        """Return list of valid option names."""
        return self._display_names


# =============================================================================
# Wire format
# =============================================================================
BASE_URL = "https://notebooklm.google.com"
BATCHEXECUTE_PATH = "/_/LabsTailwindUi/data/batchexecute"
DEFAULT_BUILD_LABEL = "boq_labs-tailwind-frontend_20260108.06_p0"

ANTI_XSSI_PREFIX = b")]}'"
ENVELOPE_DATA = "wrb.fr"
ENVELOPE_GENERIC = "generic"

LOGIN_HOST = "accounts.google.com"

# =============================================================================
# RPC identifiers
# =============================================================================
RPC_LIST_NOTEBOOKS = "wXbhsf"
RPC_GET_NOTEBOOK = "rLM1Ne"
RPC_CREATE_NOTEBOOK = "CCqFvf"
RPC_RENAME_NOTEBOOK = "s0tc2d"
RPC_DELETE_NOTEBOOK = "WWINqb"
RPC_ADD_SOURCE = "izAoDd"  # Used for URL, text and file sources
RPC_CHECK_FRESHNESS = "yR9Yof"
RPC_REFRESH_SOURCE = "FLmJqe"  # Re-import a Drive source
RPC_DELETE_SOURCE = "tGMBJ"
RPC_CREATE_NOTE = "CYK0Xb"
RPC_UPDATE_NOTE = "cYAfTb"
RPC_LIST_NOTES = "cFji9"
RPC_DELETE_NOTES = "AH0mwd"

# RPC ID to method name mapping for debug logging
RPC_NAMES = {
    RPC_LIST_NOTEBOOKS: "list_notebooks",
    RPC_GET_NOTEBOOK: "get_notebook",
    RPC_CREATE_NOTEBOOK: "create_notebook",
    RPC_RENAME_NOTEBOOK: "rename_notebook",
    RPC_DELETE_NOTEBOOK: "delete_notebook",
    RPC_ADD_SOURCE: "add_source",
    RPC_CHECK_FRESHNESS: "check_freshness",
    RPC_REFRESH_SOURCE: "refresh_source",
    RPC_DELETE_SOURCE: "delete_source",
    RPC_CREATE_NOTE: "create_note",
    RPC_UPDATE_NOTE: "update_note",
    RPC_LIST_NOTES: "list_notes",
    RPC_DELETE_NOTES: "delete_notes",
}

# =============================================================================
# RPC error statuses (google.rpc.Code values seen at envelope position 5)
# =============================================================================
RPC_ERROR_INVALID_ARGUMENT = 3
RPC_ERROR_NOT_FOUND = 5
RPC_ERROR_PERMISSION_DENIED = 7
RPC_ERROR_RESOURCE_EXHAUSTED = 8
RPC_ERROR_FAILED_PRECONDITION = 9
RPC_ERROR_INTERNAL = 13
RPC_ERROR_UNAVAILABLE = 14
RPC_ERROR_UNAUTHENTICATED = 16

RPC_ERROR_CODES = CodeMapper({
    "invalid_argument": RPC_ERROR_INVALID_ARGUMENT,
    "not_found": RPC_ERROR_NOT_FOUND,
    "permission_denied": RPC_ERROR_PERMISSION_DENIED,
    "resource_exhausted": RPC_ERROR_RESOURCE_EXHAUSTED,
    "failed_precondition": RPC_ERROR_FAILED_PRECONDITION,
    "internal": RPC_ERROR_INTERNAL,
    "unavailable": RPC_ERROR_UNAVAILABLE,
    "unauthenticated": RPC_ERROR_UNAUTHENTICATED,
})

# =============================================================================
# Ownership (notebook metadata position 0)
# =============================================================================
OWNERSHIP_MINE = 1
OWNERSHIP_SHARED = 2

OWNERSHIP = CodeMapper({
    "owned": OWNERSHIP_MINE,
    "shared_with_me": OWNERSHIP_SHARED,
})

# =============================================================================
# Source Types (source metadata position 4)
# =============================================================================
SOURCE_TYPE_GOOGLE_DOCS = 1
SOURCE_TYPE_GOOGLE_OTHER = 2
SOURCE_TYPE_PDF = 3
SOURCE_TYPE_PASTED_TEXT = 4
SOURCE_TYPE_WEB_PAGE = 5
SOURCE_TYPE_GENERATED_TEXT = 8
SOURCE_TYPE_YOUTUBE = 9
SOURCE_TYPE_UPLOADED_FILE = 11
SOURCE_TYPE_IMAGE = 13
SOURCE_TYPE_WORD_DOC = 14

SOURCE_TYPES = CodeMapper({
    "google_docs": SOURCE_TYPE_GOOGLE_DOCS,
    "google_slides_sheets": SOURCE_TYPE_GOOGLE_OTHER,
    "pdf": SOURCE_TYPE_PDF,
    "pasted_text": SOURCE_TYPE_PASTED_TEXT,
    "web_page": SOURCE_TYPE_WEB_PAGE,
    "generated_text": SOURCE_TYPE_GENERATED_TEXT,
    "youtube": SOURCE_TYPE_YOUTUBE,
    "uploaded_file": SOURCE_TYPE_UPLOADED_FILE,
    "image": SOURCE_TYPE_IMAGE,
    "word_doc": SOURCE_TYPE_WORD_DOC,
})

# =============================================================================
# Source processing status (source settings position 1)
# =============================================================================
SOURCE_STATUS_PROCESSING = 1
SOURCE_STATUS_ENABLED = 2
SOURCE_STATUS_DISABLED = 3
SOURCE_STATUS_ERROR = 4

SOURCE_STATUSES = CodeMapper({
    "processing": SOURCE_STATUS_PROCESSING,
    "enabled": SOURCE_STATUS_ENABLED,
    "disabled": SOURCE_STATUS_DISABLED,
    "error": SOURCE_STATUS_ERROR,
})

# =============================================================================
# Notes
# =============================================================================
NOTE_TYPE_TEXT = 1
NOTE_TYPE_MIND_MAP = 2

NOTE_TYPES = CodeMapper({
    "text": NOTE_TYPE_TEXT,
    "mind_map": NOTE_TYPE_MIND_MAP,
})

# Project options block sent with create/add-source calls
PROJECT_OPTIONS = [1, None, None, None, None, None, None, None, None, None, [1]]
