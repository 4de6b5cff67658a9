"""Outcome of one synchronization attempt."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_FAILURE = "failure"
STATUS_SKIPPED = "skipped"


@dataclass
class CategoryCounts:
    success: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)


class SyncResult:
    """
    In-memory aggregate of a single create/update/comment sync.

    Sub-step failures (attachments, links, transitions, comments) are
    recorded as warnings; only ``add_error`` marks the whole operation as
    failed.
    """

    def __init__(self, operation: str):
        self.operation = operation
        self.warnings: List[str] = []
        self.errors: List[str] = []
        self.attachments = CategoryCounts()
        self.links = CategoryCounts()
        self.transitions = CategoryCounts()
        self.comments = CategoryCounts()
        self.fields_updated: List[str] = []
        self.skip_reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def skipped(self) -> bool:
        return self.skip_reason is not None

    @property
    def status(self) -> str:
        if self.skip_reason is not None and not self.errors:
            return STATUS_SKIPPED
        if self.errors:
            return STATUS_FAILURE
        if self.warnings:
            return STATUS_PARTIAL
        return STATUS_SUCCESS

    def mark_skipped(self, reason: str) -> None:
        self.skip_reason = reason
        logger.info(f"Sync skipped: {reason}")

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)
        logger.warning(message)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        logger.error(message)

    # Attachments

    def add_attachment_success(self, filename: str) -> None:
        self.attachments.success += 1

    def add_attachment_failure(self, filename: str, error: str) -> None:
        self.attachments.failed += 1
        self.attachments.errors.append(f"{filename}: {error}")
        self.add_warning(f"Attachment failed: {filename} - {error}")

    def add_attachment_skipped(self, filename: str, reason: str) -> None:
        self.attachments.skipped += 1
        logger.debug(f"Attachment skipped: {filename} ({reason})")

    # Links

    def add_link_success(self, linked_issue: str, link_type: str) -> None:
        self.links.success += 1

    def add_link_failure(self, linked_issue: str, error: str) -> None:
        self.links.failed += 1
        self.links.errors.append(f"{linked_issue}: {error}")
        self.add_warning(f"Link failed: {linked_issue} - {error}")

    def add_link_skipped(self, linked_issue: str, reason: str) -> None:
        self.links.skipped += 1
        logger.debug(f"Link skipped: {linked_issue} ({reason})")

    # Transitions

    def add_transition_success(self, status: str) -> None:
        self.transitions.success += 1

    def add_transition_failure(self, status: str, error: str) -> None:
        self.transitions.failed += 1
        self.transitions.errors.append(f"{status}: {error}")
        self.add_warning(f"Transition failed: {status} - {error}")

    # Comments

    def add_comment_success(self) -> None:
        self.comments.success += 1

    def add_comment_failure(self, comment_id: str, error: str) -> None:
        self.comments.failed += 1
        self.comments.errors.append(f"{comment_id}: {error}")
        self.add_warning(f"Comment failed: {comment_id} - {error}")

    def to_dict(self) -> Dict[str, Any]:
        def counts(category: CategoryCounts, with_skipped: bool = True) -> Dict[str, Any]:
            data: Dict[str, Any] = {"success": category.success, "failed": category.failed}
            if with_skipped:
                data["skipped"] = category.skipped
            data["errors"] = list(category.errors)
            return data

        return {
            "operation": self.operation,
            "status": self.status,
            "success": self.success,
            "skipReason": self.skip_reason,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "details": {
                "attachments": counts(self.attachments),
                "links": counts(self.links),
                "transitions": counts(self.transitions, with_skipped=False),
                "comments": counts(self.comments, with_skipped=False),
                "fields": list(self.fields_updated),
            },
        }

    def log_summary(self, issue_key: str, remote_key: Optional[str] = None) -> str:
        """Log a single structured summary and return the overall status."""
        status = self.status
        target = f" -> {remote_key}" if remote_key else ""
        parts = [f"Sync summary ({self.operation}) {issue_key}{target}: {status.upper()}"]

        total = self.attachments.success + self.attachments.failed + self.attachments.skipped
        if total:
            parts.append(
                f"attachments {self.attachments.success}/{total} synced, "
                f"{self.attachments.failed} failed, {self.attachments.skipped} skipped"
            )
        total = self.links.success + self.links.failed + self.links.skipped
        if total:
            parts.append(
                f"links {self.links.success}/{total} synced, "
                f"{self.links.failed} failed, {self.links.skipped} skipped"
            )
        total = self.transitions.success + self.transitions.failed
        if total:
            parts.append(f"transitions {self.transitions.success}/{total}")
        total = self.comments.success + self.comments.failed
        if total:
            parts.append(f"comments {self.comments.success}/{total}")
        if self.warnings:
            parts.append(f"warnings: {'; '.join(self.warnings)}")
        if self.errors:
            parts.append(f"errors: {'; '.join(self.errors)}")

        message = " | ".join(parts)
        if status == STATUS_FAILURE:
            logger.error(message)
        elif status == STATUS_PARTIAL:
            logger.warning(message)
        else:
            logger.info(message)
        return status
