"""
Translation tables between local and remote vocabularies.

Three tables exist (users, fields, statuses), each authored by an
administrator as ``{remoteId: {localId, remoteName, localName}}``. Older
configurations stored bare strings (``{remoteId: "localId"}``); those are
migrated when the table is loaded.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


logger = logging.getLogger(__name__)

USER_TABLE = "users"
FIELD_TABLE = "fields"
STATUS_TABLE = "statuses"

TABLE_STORAGE_KEYS = {
    USER_TABLE: "userMappings",
    FIELD_TABLE: "fieldMappings",
    STATUS_TABLE: "statusMappings",
}


class TranslationEntry(BaseModel):
    """One remote identifier and the local identifier it corresponds to."""
    model_config = ConfigDict(populate_by_name=True)

    local_id: str = Field(alias="localId")
    remote_name: str = Field(default="", alias="remoteName")
    local_name: str = Field(default="", alias="localName")


class TranslationTable:
    """Ordered ``remote id -> TranslationEntry`` table."""

    def __init__(self, entries: Optional[Dict[str, TranslationEntry]] = None):
        self.entries: Dict[str, TranslationEntry] = dict(entries or {})

    @classmethod
    def from_raw(cls, raw: Optional[Dict[str, Any]]) -> "TranslationTable":
        """Build a table from stored JSON, migrating the bare-string form."""
        entries: Dict[str, TranslationEntry] = {}
        for remote_id, value in (raw or {}).items():
            if not value:
                continue
            if isinstance(value, str):
                entries[str(remote_id)] = TranslationEntry(local_id=value)
            elif isinstance(value, dict) and value.get("localId"):
                entries[str(remote_id)] = TranslationEntry.model_validate(value)
            else:
                logger.warning(f"Ignoring malformed translation entry for {remote_id!r}")
        return cls(entries)

    def to_raw(self) -> Dict[str, Dict[str, str]]:
        return {
            remote_id: entry.model_dump(by_alias=True)
            for remote_id, entry in self.entries.items()
        }

    def to_outbound(self, local_id: Optional[str]) -> Optional[str]:
        """Remote id for ``local_id``. First match in table order wins."""
        if not local_id:
            return None
        for remote_id, entry in self.entries.items():
            if entry.local_id == local_id:
                return remote_id
        return None

    def to_inbound(self, remote_id: Optional[str]) -> Optional[str]:
        """Local id for ``remote_id``."""
        if not remote_id:
            return None
        entry = self.entries.get(remote_id)
        return entry.local_id if entry else None

    def invert(self) -> Dict[str, str]:
        """
        ``{local_id: remote_id}``.

        When two remote ids share a local id, the one later in table order
        wins. ``to_outbound`` picks the earlier one, so the two disagree for
        such tables; ``duplicate_local_ids`` reports them.
        """
        inverted: Dict[str, str] = {}
        for remote_id, entry in self.entries.items():
            inverted[entry.local_id] = remote_id
        return inverted

    def duplicate_local_ids(self) -> List[str]:
        seen: Dict[str, int] = {}
        for entry in self.entries.values():
            seen[entry.local_id] = seen.get(entry.local_id, 0) + 1
        return sorted(local_id for local_id, count in seen.items() if count > 1)

    def __len__(self) -> int:
        return len(self.entries)


# -------------------------------------------------------------------------
# Field value normalization
# -------------------------------------------------------------------------

KEEP = "keep"
ID_LIST = "id_list"
DROP = "drop"


@dataclass
class NormalizedValue:
    """Outcome of preparing a custom field value for the remote tracker."""
    action: str
    value: Any = None
    warning: Optional[str] = None


def _coerce_id(raw: Any) -> Optional[int]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.strip().lstrip("-").isdigit():
        return int(raw.strip())
    return None


def normalize_field_value(value: Any) -> NormalizedValue:
    """
    Prepare a custom field value for the remote payload.

    - empty lists are dropped (the remote rejects them for most field types)
    - lists of objects with numeric ids (sprints and similar composite
      fields) become lists of ints
    - lists of objects without usable ids are dropped with a warning
    - everything else is sent as-is
    """
    if not isinstance(value, list):
        return NormalizedValue(KEEP, value)
    if not value:
        return NormalizedValue(DROP, warning=None)
    if not all(isinstance(item, dict) for item in value):
        return NormalizedValue(KEEP, value)

    ids = [_coerce_id(item.get("id")) for item in value]
    ids = [item_id for item_id in ids if item_id is not None]
    if not ids:
        return NormalizedValue(
            DROP,
            warning=f"Could not extract ids from list value (first item keys: {sorted(value[0].keys())})",
        )
    return NormalizedValue(ID_LIST, ids)
