"""Library item lifecycle, validation and version ledger."""

from costbook.library.codes import generate_item_code
from costbook.library.service import LibraryManagementService
from costbook.library.validation import check_item, validate_item
from costbook.library.versions import VersionLedger, find_differences

__all__ = [
    "LibraryManagementService",
    "VersionLedger",
    "check_item",
    "find_differences",
    "generate_item_code",
    "validate_item",
]
