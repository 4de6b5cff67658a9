from typing import Dict, List, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from app.core.auth import verify_credentials
from app.core.kv_store import SqlKeyValueStore
from app.core.services import get_kv_store
from app.core.sync_config import ConfigStore
from app.core.translation import TABLE_STORAGE_KEYS, TranslationEntry, TranslationTable


router = APIRouter(prefix="/api/translations", tags=["translations"])


class TranslationTableResponse(BaseModel):
    table: str
    entries: Dict[str, TranslationEntry]
    duplicate_local_ids: List[str] = []


def _check_table_name(table_name: str) -> None:
    if table_name not in TABLE_STORAGE_KEYS:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown translation table '{table_name}'. Expected one of: {', '.join(TABLE_STORAGE_KEYS)}"
        )


@router.get("/{table_name}", response_model=TranslationTableResponse)
async def get_table(
    table_name: str,
    kv: SqlKeyValueStore = Depends(get_kv_store),
    _: str = Depends(verify_credentials)
):
    """Return a translation table (``users``, ``fields`` or ``statuses``)."""
    _check_table_name(table_name)
    table = await ConfigStore(kv).get_table(table_name)
    return TranslationTableResponse(
        table=table_name,
        entries=table.entries,
        duplicate_local_ids=table.duplicate_local_ids(),
    )


@router.put("/{table_name}", response_model=TranslationTableResponse)
async def replace_table(
    table_name: str,
    entries: Dict[str, Union[TranslationEntry, str]],
    kv: SqlKeyValueStore = Depends(get_kv_store),
    _: str = Depends(verify_credentials)
):
    """
    Replace a translation table.

    The body maps remote ids to ``{localId, remoteName, localName}`` or, in the
    legacy form, to a bare local id. Tables that map several remote ids to
    one local id are saved and reported in ``duplicate_local_ids``.
    """
    _check_table_name(table_name)
    raw = {
        remote_id: entry if isinstance(entry, str) else entry.model_dump(by_alias=True)
        for remote_id, entry in entries.items()
    }
    table = TranslationTable.from_raw(raw)
    duplicates = await ConfigStore(kv).save_table(table_name, table)
    return TranslationTableResponse(table=table_name, entries=table.entries, duplicate_local_ids=duplicates)
