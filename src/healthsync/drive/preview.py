"""
Human-readable previews of files in the application folder.

    JSON (by content type or .json name) → pretty-printed, 2-space indent;
                                           left as-is if it doesn't parse
    text/*, .txt, .md                    → decoded text
    anything else                        → a one-line size summary

Folders have no content; they get a fixed notice instead.
"""
import json
from typing import Any, Dict, Optional

from healthsync.errors import AuthError, NotFoundError, SyncError

TEXT_SUFFIXES = (".txt", ".md")


def folder_notice(name: str) -> str:
    return f"Cannot show folder contents: {name}\n\nThis is a folder, not a text file."


def render_preview(name: str, content_type: str, body: bytes) -> str:
    """Render a downloaded file body for display."""
    content_type = (content_type or "").lower()
    if "application/json" in content_type or name.endswith(".json"):
        text = body.decode("utf-8", errors="replace")
        try:
            return json.dumps(json.loads(text), indent=2, ensure_ascii=False)
        except ValueError:
            return text
    if content_type.startswith("text/") or name.endswith(TEXT_SUFFIXES):
        return body.decode("utf-8", errors="replace")
    return (
        f"Binary file: {name}\n"
        f"Size: {len(body) / 1024:.2f} KB\n\n"
        "Binary content cannot be displayed."
    )


def describe_failure(exc: SyncError) -> str:
    """Short user-facing message for a failed file load."""
    if isinstance(exc, NotFoundError):
        return "File not found"
    if isinstance(exc, AuthError) and exc.status_code == 403:
        return "No permission to access this file"
    if isinstance(exc, AuthError):
        return "Authentication expired, please sign in again"
    return str(exc)


def summarize_item(item: Dict[str, Any]) -> Dict[str, Optional[Any]]:
    """Reduce a Graph driveItem to what a file listing shows."""
    return {
        "id": item.get("id"),
        "name": item.get("name"),
        "size": item.get("size"),
        "isFolder": "folder" in item,
        "lastModified": item.get("lastModifiedDateTime"),
    }
