"""Drive a remote issue to the status of its local counterpart."""

import logging
from typing import Any, Dict, List, Optional

from app.core.rate_limiter import RetryExecutor
from app.core.sync_result import SyncResult
from app.core.tracker_client import TrackerClient, Transition
from app.core.translation import TranslationTable


logger = logging.getLogger(__name__)


def choose_transition(
    transitions: List[Transition],
    status_name: str,
    status_table: TranslationTable,
    status_id: Optional[str] = None,
) -> Optional[Transition]:
    """
    Pick the transition leading to ``status_name``.

    A destination whose name matches case-insensitively wins; otherwise the
    status table is consulted (by local status id, then by local name) for
    the remote status id to look for.
    """
    wanted = status_name.lower()
    for transition in transitions:
        if transition.to.name.lower() == wanted:
            return transition

    inverted = status_table.invert()
    remote_status_id = None
    if status_id:
        remote_status_id = inverted.get(status_id)
    if remote_status_id is None:
        remote_status_id = inverted.get(status_name)
    if remote_status_id is None:
        return None

    logger.debug(f"Trying mapped status id {remote_status_id} for '{status_name}'")
    for transition in transitions:
        if transition.to.id == remote_status_id:
            return transition
    return None


def already_in_status(
    current: Optional[Dict[str, Any]],
    status_name: str,
    status_table: TranslationTable,
    status_id: Optional[str] = None,
) -> bool:
    """Whether the remote ``current`` status already corresponds to the local one."""
    if not current:
        return False
    if (current.get("name") or "").lower() == status_name.lower():
        return True
    inverted = status_table.invert()
    mapped_id = inverted.get(status_id) if status_id else None
    if mapped_id is None:
        mapped_id = inverted.get(status_name)
    return mapped_id is not None and str(current.get("id")) == mapped_id


async def transition_remote_issue(
    remote: TrackerClient,
    retry: RetryExecutor,
    remote_key: str,
    status_name: str,
    status_table: TranslationTable,
    result: SyncResult,
    status_id: Optional[str] = None,
) -> bool:
    """
    Move ``remote_key`` to ``status_name``.

    Failure is recorded on ``result`` and never raised: fields and
    attachments have already been applied when this runs.
    """
    logger.info(f"Attempting to transition {remote_key} to status: {status_name}")
    try:
        transitions = await remote.get_transitions(remote_key)
        transition = choose_transition(transitions, status_name, status_table, status_id)

        if transition is None:
            available = ", ".join(t.to.name for t in transitions)
            result.add_transition_failure(
                status_name,
                f"No transition found to status: {status_name}. Available: {available}",
            )
            return False

        logger.info(f"Using transition: {transition.name} -> {transition.to.name}")
        await retry.execute(
            lambda: remote.transition_issue(remote_key, transition.id),
            f"Transition {remote_key} to {status_name}",
        )
        result.add_transition_success(transition.to.name)
        return True

    except Exception as e:
        logger.error(f"Error transitioning {remote_key}: {e}", exc_info=True)
        result.add_transition_failure(status_name, str(e))
        return False
