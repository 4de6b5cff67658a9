"""
Conversion between plain text and the trackers' rich document format (ADF).

Conversions are lossy: formatting, mentions and any structure beyond plain
paragraphs are discarded.
"""

import copy
import logging
import re
from typing import Any, Dict, Mapping, Optional


logger = logging.getLogger(__name__)

_PARAGRAPH_SPLIT = re.compile(r"\n\n+")


def empty_document() -> Dict[str, Any]:
    return {"type": "doc", "version": 1, "content": []}


def to_plain_text(document: Any) -> str:
    """
    Flatten a document to text.

    Paragraphs after the first are separated by a blank line, hard breaks
    become a single newline.
    """
    if not isinstance(document, dict):
        return ""

    parts = []

    def walk(node: Dict[str, Any], is_first: bool) -> None:
        node_type = node.get("type")
        if node_type == "text":
            parts.append(node.get("text", ""))
        elif node_type == "paragraph" and not is_first and parts:
            parts.append("\n\n")
        elif node_type == "hardBreak":
            parts.append("\n")

        children = node.get("content")
        if isinstance(children, list):
            for index, child in enumerate(children):
                if isinstance(child, dict):
                    walk(child, is_first and index == 0)

    walk(document, True)
    return "".join(parts).strip()


def from_plain_text(text: Optional[str]) -> Dict[str, Any]:
    """Build a document with one paragraph per blank-line separated block."""
    if not text or not text.strip():
        return empty_document()

    paragraphs = [p.strip() for p in _PARAGRAPH_SPLIT.split(text) if p.strip()]
    return {
        "type": "doc",
        "version": 1,
        "content": [
            {"type": "paragraph", "content": [{"type": "text", "text": paragraph}]}
            for paragraph in paragraphs
        ],
    }


def description_to_document(value: Any) -> Dict[str, Any]:
    """Text-only document for a description that may be ADF, a string or missing."""
    if isinstance(value, dict):
        return from_plain_text(to_plain_text(value))
    if isinstance(value, str):
        return from_plain_text(value)
    return empty_document()


def has_media(document: Any) -> bool:
    if not isinstance(document, dict):
        return False
    if document.get("type") == "media":
        return True
    children = document.get("content")
    if isinstance(children, list):
        return any(has_media(child) for child in children)
    return False


def rewrite_media_references(document: Dict[str, Any], id_map: Mapping[str, str]) -> Dict[str, Any]:
    """
    Copy ``document`` replacing media ids found in ``id_map``.

    Unmapped media ids are logged and left as they are.
    """
    rewritten = copy.deepcopy(document)

    def walk(node: Dict[str, Any]) -> None:
        attrs = node.get("attrs")
        if node.get("type") == "media" and isinstance(attrs, dict) and attrs.get("id"):
            local_id = str(attrs["id"])
            remote_id = id_map.get(local_id)
            if remote_id:
                logger.debug(f"Replacing media id {local_id} -> {remote_id}")
                attrs["id"] = remote_id
            else:
                logger.info(f"No attachment mapping found for media id {local_id}")

        children = node.get("content")
        if isinstance(children, list):
            for child in children:
                if isinstance(child, dict):
                    walk(child)

    if isinstance(rewritten, dict):
        walk(rewritten)
    return rewritten


def text_with_author(text: Optional[str], org_name: str, user_name: str) -> Dict[str, Any]:
    """Single-paragraph comment body prefixed with its origin."""
    prefix = f"[Comment from {org_name} - User: {user_name}]:\n\n"
    return {
        "type": "doc",
        "version": 1,
        "content": [
            {"type": "paragraph", "content": [{"type": "text", "text": prefix + (text or "")}]}
        ],
    }
