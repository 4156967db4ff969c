"""
Form assignments and e-mail invitations.

An admin assigns a template to a user; each assignment carries a unique
survey token that the invitation link embeds. The assignment moves
sent -> opened -> completed as the recipient works through the form.
"""

import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field

from formdesk.core.errors import (
    AssignmentNotFoundError,
    PermissionDeniedError,
)
from formdesk.core.identity import CallerContext
from formdesk.core.mail import MailResult, MailTransport
from formdesk.core.schema import CamelModel
from formdesk.core.utils import now_utc

logger = logging.getLogger(__name__)

DEFAULT_FORM_LINK_BASE_URL = "http://localhost:5173/form"


class AssignmentStatus(str, Enum):
    SENT = "sent"
    OPENED = "opened"
    COMPLETED = "completed"


class FormAssignment(CamelModel):
    """A template assigned to one user, reachable through its survey token."""

    id: str | None = None
    template_id: str
    user_id: str
    recipient_email: str | None = None
    recipient_name: str | None = None
    survey_token: str = Field(default_factory=lambda: str(uuid.uuid4()))
    status: AssignmentStatus = AssignmentStatus.SENT
    assigned_at: datetime | None = None
    completed_at: datetime | None = None
    expires_at: datetime | None = None

    def is_expired(self, at: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (at or now_utc()) >= self.expires_at


class Recipient(CamelModel):
    """Who a bulk assignment is for."""

    user_id: str
    email: str | None = None
    name: str | None = None


class BulkAssignmentResult(CamelModel):
    user_id: str
    status: str  # success | skipped | failed
    reason: str | None = None
    assignment: FormAssignment | None = None


class AssignmentService:
    """Creates assignments and sends invitation e-mails.

    Args:
        store: A FormStore (templates and assignments).
        mailer: The mail transport used for invitations.
        form_link_base_url: Base URL of the fill-out page; the survey
            token is appended as the `token` query parameter.
    """

    def __init__(
        self,
        store: Any,
        mailer: MailTransport | None = None,
        form_link_base_url: str = DEFAULT_FORM_LINK_BASE_URL,
    ):
        self.store = store
        self.mailer = mailer
        self.form_link_base_url = form_link_base_url

    # -----------------------------------------------------------------
    # Assigning
    # -----------------------------------------------------------------

    def assign(
        self,
        caller: CallerContext,
        template_id: str,
        user_id: str,
        email: str | None = None,
        name: str | None = None,
    ) -> tuple[FormAssignment, bool]:
        """Assign a template to a user.

        Assigning the same template to the same user twice returns the
        existing assignment.

        Returns:
            (assignment, created)
        """
        self._require_admin(caller)
        self.store.get_template(template_id)

        existing = self.store.find_assignment(user_id, template_id)
        if existing is not None:
            return existing, False

        assignment = self.store.save_assignment(
            FormAssignment(
                template_id=template_id,
                user_id=user_id,
                recipient_email=email,
                recipient_name=name,
            )
        )
        logger.info("Assigned template %s to user %s", template_id, user_id)
        return assignment, True

    def bulk_assign(
        self,
        caller: CallerContext,
        template_id: str,
        recipients: list[Recipient],
    ) -> list[BulkAssignmentResult]:
        """Assign a template to many users, reporting per-recipient outcomes."""
        self._require_admin(caller)
        self.store.get_template(template_id)

        results: list[BulkAssignmentResult] = []
        for recipient in recipients:
            if not recipient.user_id.strip():
                results.append(
                    BulkAssignmentResult(user_id=recipient.user_id, status="failed", reason="Invalid userId")
                )
                continue

            assignment, created = self.assign(
                caller, template_id, recipient.user_id, recipient.email, recipient.name
            )
            results.append(
                BulkAssignmentResult(
                    user_id=recipient.user_id,
                    status="success" if created else "skipped",
                    reason=None if created else "Already assigned",
                    assignment=assignment,
                )
            )
        return results

    def list_for_user(self, caller: CallerContext, user_id: str) -> list[FormAssignment]:
        if not (caller.is_admin or caller.owns(user_id)):
            raise PermissionDeniedError("Only the assignee or an admin can list assignments")
        return self.store.list_assignments(user_id)

    # -----------------------------------------------------------------
    # Token flow
    # -----------------------------------------------------------------

    def update_status(self, token: str, status: AssignmentStatus) -> FormAssignment:
        """Record progress of an assignment identified by its survey token."""
        assignment = self._get_by_token(token)
        update: dict[str, Any] = {"status": status}
        if status == AssignmentStatus.COMPLETED:
            update["completed_at"] = now_utc()
        updated = self.store.save_assignment(assignment.model_copy(update=update))
        logger.info("Assignment %s is now %s", updated.id, status.value)
        return updated

    def validate_token(self, caller: CallerContext, token: str) -> FormAssignment:
        """Resolve a survey token for the caller opening the form.

        Raises:
            AssignmentNotFoundError: Unknown or expired token.
            PermissionDeniedError: A logged-in caller who is not the assignee.
        """
        assignment = self._get_by_token(token)
        if assignment.is_expired():
            raise AssignmentNotFoundError(token)
        if caller.authenticated and not caller.is_admin and caller.user_id != assignment.user_id:
            raise PermissionDeniedError("You are not authorized to access this form")
        return assignment

    # -----------------------------------------------------------------
    # Invitations
    # -----------------------------------------------------------------

    def form_link(self, assignment: FormAssignment) -> str:
        return f"{self.form_link_base_url}?token={assignment.survey_token}"

    def render_invitation(self, assignment: FormAssignment, template_title: str) -> tuple[str, str]:
        """Build the (subject, body) of an invitation e-mail."""
        subject = f"Please Fill Out: {template_title}"
        body = (
            f"Hi {assignment.recipient_name or 'User'},\n\n"
            f"You've been invited to fill out the form: {template_title}.\n\n"
            f"Click below to open the form:\n"
            f"{self.form_link(assignment)}\n\n"
            f"Best regards,\n"
            f"Forms Team\n"
        )
        return subject, body

    async def send_invitation(self, caller: CallerContext, assignment_id: str) -> MailResult:
        """E-mail the survey link of an assignment to its recipient.

        Delivery failures are returned, not raised, and never retried.
        """
        self._require_admin(caller)
        if self.mailer is None:
            return MailResult(success=False, error="No mail transport configured")

        assignment = self.store.get_assignment(assignment_id)
        if not assignment.recipient_email:
            return MailResult(success=False, error="Assignment has no recipient e-mail")

        template = self.store.get_template(assignment.template_id)
        subject, body = self.render_invitation(assignment, template.title)
        result = await self.mailer.send(assignment.recipient_email, subject, body)
        if not result.success:
            logger.error("Invitation for assignment %s failed: %s", assignment_id, result.error)
        return result

    # -----------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------

    def _get_by_token(self, token: str) -> FormAssignment:
        if not token:
            raise AssignmentNotFoundError(token)
        return self.store.get_assignment_by_token(token)

    @staticmethod
    def _require_admin(caller: CallerContext) -> None:
        if not caller.is_admin:
            raise PermissionDeniedError("Admin role required")
