"""Upload validation: type allow-list, filename safety, signatures and content threats."""

import hashlib
import json
import os
import re
from typing import Any, Dict, Iterable, List, Optional

from ..core.exceptions import TriggerValidationError

SCAN_WINDOW = 8192
MAX_JSON_DEPTH = 10

ALLOWED_TYPES: Dict[str, List[str]] = {
    ".txt": ["text/plain"],
    ".csv": ["text/csv", "application/csv", "text/plain", "application/vnd.ms-excel"],
    ".json": ["application/json", "text/json", "text/plain"],
    ".xml": ["application/xml", "text/xml"],
    ".pdf": ["application/pdf"],
    ".jpg": ["image/jpeg"],
    ".jpeg": ["image/jpeg"],
    ".png": ["image/png"],
    ".gif": ["image/gif"],
    ".xls": ["application/vnd.ms-excel"],
    ".xlsx": ["application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", "application/zip"],
    ".zip": ["application/zip", "application/x-zip-compressed"],
}

MAGIC_NUMBERS: Dict[str, List[bytes]] = {
    ".jpg": [b"\xff\xd8\xff"],
    ".jpeg": [b"\xff\xd8\xff"],
    ".png": [b"\x89PNG\r\n\x1a\n"],
    ".gif": [b"GIF87a", b"GIF89a"],
    ".pdf": [b"%PDF"],
    ".zip": [b"PK\x03\x04", b"PK\x05\x06", b"PK\x07\x08"],
    ".xlsx": [b"PK\x03\x04"],
    ".xls": [b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"],
}

EXECUTABLE_EXTENSIONS = {
    ".exe", ".bat", ".cmd", ".com", ".scr", ".pif", ".vbs", ".js", ".jar", ".msi",
    ".dll", ".sh", ".ps1", ".php", ".asp", ".aspx", ".jsp", ".cgi", ".py", ".pl", ".rb",
}

RESERVED_NAMES = {"con", "prn", "aux", "nul"} | {f"com{i}" for i in range(1, 10)} | {f"lpt{i}" for i in range(1, 10)}

ILLEGAL_FILENAME = re.compile(r'[<>:"|?*\x00-\x1f]')

THREAT_PATTERNS = [
    re.compile(rb"<script[\s>]", re.IGNORECASE),
    re.compile(rb"javascript:", re.IGNORECASE),
    re.compile(rb"vbscript:", re.IGNORECASE),
    re.compile(rb"\son\w+\s*=", re.IGNORECASE),
    re.compile(rb"<(iframe|object|embed|applet)[\s>]", re.IGNORECASE),
    re.compile(rb"<\?php", re.IGNORECASE),
    re.compile(rb"<\?="),
    re.compile(rb"<!--\s*#\s*(include|exec)", re.IGNORECASE),
    re.compile(rb"union\s+(all\s+)?select", re.IGNORECASE),
    re.compile(rb"insert\s+into\s", re.IGNORECASE),
    re.compile(rb"drop\s+table", re.IGNORECASE),
    re.compile(rb"<!ENTITY", re.IGNORECASE),
    re.compile(rb"SYSTEM\s+\""),
    re.compile(rb"data:[\w/+.-]+;base64,", re.IGNORECASE),
]

# Binary formats are not scanned for markup threats; their bytes match by accident.
TEXT_EXTENSIONS = {".txt", ".csv", ".json", ".xml"}


def extension_of(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lower()


def content_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def normalize_allowed(allowed: Optional[Iterable[str]]) -> Optional[set]:
    """Node ``allowedFileTypes`` as a set of extensions and MIME types, or None for no restriction."""
    if not allowed:
        return None
    if isinstance(allowed, str):
        allowed = allowed.split(",")
    result = set()
    for item in allowed:
        item = str(item).strip().lower()
        if not item:
            continue
        if "/" not in item and not item.startswith("."):
            item = f".{item}"
        result.add(item)
    return result or None


def check_type(filename: str, mimetype: Optional[str], node_allowed: Optional[Iterable[str]] = None) -> str:
    """
    Enforce the global allow-list and the node's own list.

    Returns:
        The MIME type recorded for the file

    Raises:
        TriggerValidationError: FILE_TYPE_NOT_ALLOWED
    """
    ext = extension_of(filename)
    if ext not in ALLOWED_TYPES:
        raise TriggerValidationError(f"File type '{ext or filename}' is not allowed", "FILE_TYPE_NOT_ALLOWED")

    declared = (mimetype or "").split(";")[0].strip().lower()
    if declared and declared != "application/octet-stream" and declared not in ALLOWED_TYPES[ext]:
        raise TriggerValidationError(
            f"MIME type '{declared}' does not match extension '{ext}'", "FILE_TYPE_NOT_ALLOWED"
        )

    node_types = normalize_allowed(node_allowed)
    if node_types is not None and ext not in node_types and not (set(ALLOWED_TYPES[ext]) & node_types):
        raise TriggerValidationError(f"File type '{ext}' is not accepted by this trigger", "FILE_TYPE_NOT_ALLOWED")

    return declared if declared and declared != "application/octet-stream" else ALLOWED_TYPES[ext][0]


def check_filename(filename: str) -> None:
    """
    Reject path traversal, reserved device names, hidden and double-extension executables.

    Raises:
        TriggerValidationError: INVALID_FILE_CONTENT
    """
    def fail(reason: str):
        raise TriggerValidationError(f"Unsafe filename: {reason}", "INVALID_FILE_CONTENT")

    if not filename or not filename.strip():
        fail("empty")
    if ".." in filename or "/" in filename or "\\" in filename:
        fail("path components are not allowed")
    if ILLEGAL_FILENAME.search(filename):
        fail("illegal characters")
    if filename.startswith("."):
        fail("hidden files are not allowed")
    if len(filename) > 255:
        fail("name too long")

    parts = filename.lower().split(".")
    if parts[0] in RESERVED_NAMES:
        fail("reserved device name")
    if any(f".{part}" in EXECUTABLE_EXTENSIONS for part in parts[1:]):
        fail("executable extension")


def check_signature(filename: str, content: bytes) -> None:
    """
    Binary formats must start with their magic number.

    Raises:
        TriggerValidationError: INVALID_FILE_CONTENT
    """
    signatures = MAGIC_NUMBERS.get(extension_of(filename))
    if signatures and not any(content.startswith(signature) for signature in signatures):
        raise TriggerValidationError(
            f"File content does not match its '{extension_of(filename)}' type", "INVALID_FILE_CONTENT"
        )


def _depth(value: Any, level: int = 1) -> int:
    if isinstance(value, dict):
        return max([_depth(v, level + 1) for v in value.values()] or [level])
    if isinstance(value, list):
        return max([_depth(v, level + 1) for v in value] or [level])
    return level


def check_json(content: bytes, max_depth: int = MAX_JSON_DEPTH) -> Any:
    """
    Parse JSON uploads and bound their nesting.

    Raises:
        TriggerValidationError: INVALID_JSON
    """
    try:
        document = json.loads(content.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise TriggerValidationError(f"Invalid JSON file: {e}", "INVALID_JSON")
    except RecursionError:
        raise TriggerValidationError("JSON nesting too deep", "INVALID_JSON")

    if _depth(document) > max_depth + 1:
        raise TriggerValidationError(f"JSON nesting exceeds {max_depth} levels", "INVALID_JSON")
    return document


def scan_threats(content: bytes) -> Optional[str]:
    """Return the first threat pattern found in the scan window, if any."""
    window = content[:SCAN_WINDOW]
    for pattern in THREAT_PATTERNS:
        if pattern.search(window):
            return pattern.pattern.decode("ascii", "replace")
    return None


def validate_upload(filename: str, mimetype: Optional[str], content: bytes, max_size: int,
                    node_allowed: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """
    Run every upload check in order.

    Returns:
        ``{filename, size, mimetype, hash}`` for the accepted file

    Raises:
        TriggerValidationError: with the code of the first failed check
    """
    size = len(content)
    if size > max_size:
        raise TriggerValidationError(f"File exceeds the {max_size} byte limit", "FILE_TOO_LARGE")

    recorded_type = check_type(filename, mimetype, node_allowed)
    check_filename(filename)
    check_signature(filename, content)
    if extension_of(filename) == ".json":
        check_json(content)

    if extension_of(filename) in TEXT_EXTENSIONS:
        threat = scan_threats(content)
        if threat:
            raise TriggerValidationError("File contains potentially malicious content", "MALICIOUS_CONTENT") \
                .add_details(pattern=threat)

    return {
        "filename": filename,
        "size": size,
        "mimetype": recorded_type,
        "hash": content_hash(content),
    }
