"""
Template and response operations with ownership and visibility checks.

The service is the seam the HTTP layer calls. It receives the caller's
identity explicitly, enforces who may read or change what, and turns
submitted value maps into immutable response records.
"""

import logging
import math
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from formdesk.core.builder import check_template, format_validation_error
from formdesk.core.errors import (
    AuthoringError,
    FormClosedError,
    FormValidationError,
    PermissionDeniedError,
)
from formdesk.core.identity import CallerContext
from formdesk.core.runtime import FormRuntime
from formdesk.core.schema import ResponseAnswer, ResponseRecord, Template
from formdesk.core.store import FormStore
from formdesk.core.validation import validate_page
from formdesk.core.visibility import is_condition_met

logger = logging.getLogger(__name__)

# Template settings an update may change. Ownership, counters and
# timestamps are maintained by the service and the store.
UPDATABLE_FIELDS = {
    "title",
    "description",
    "fields",
    "is_public",
    "allow_anonymous",
    "max_responses",
    "is_active",
}


class FormService:
    """Template CRUD, submission and response access.

    Args:
        store: The persistence collaborator.
        strict_submit: Passed to every runtime this service starts.
    """

    def __init__(self, store: FormStore, strict_submit: bool = True):
        self.store = store
        self.strict_submit = strict_submit

    # -----------------------------------------------------------------
    # Templates
    # -----------------------------------------------------------------

    def create_template(self, caller: CallerContext, template: Template) -> Template:
        """Save a new template owned by the caller.

        Raises:
            PermissionDeniedError: Anonymous caller.
            AuthoringError: The template fails its save-time checks.
        """
        if not caller.authenticated:
            raise PermissionDeniedError("Login required to create a form")

        draft = template.model_copy(
            update={"id": None, "owner_id": caller.user_id, "response_count": 0}
        )
        check_template(draft)
        saved = self.store.save_template(draft)
        logger.info("Template %s created by %s", saved.id, caller.user_id)
        return saved

    def get_template(self, caller: CallerContext, template_id: str) -> Template:
        """Return a template the caller may see: public, owned, or any for admins."""
        template = self.store.get_template(template_id)
        if not (template.is_public or caller.can_manage(template.owner_id)):
            raise PermissionDeniedError("Access denied")
        return template

    def get_fillable_template(self, caller: CallerContext, template_id: str) -> Template:
        """Return an active template the caller may respond to."""
        template = self.get_template(caller, template_id)
        if not template.is_active:
            raise FormClosedError(f"Template '{template_id}' is inactive")
        return template

    def update_template(
        self,
        caller: CallerContext,
        template_id: str,
        changes: Mapping[str, Any],
    ) -> Template:
        """Apply a partial update. Unknown or protected keys are ignored."""
        current = self._get_managed(caller, template_id)

        data = current.model_dump()
        for key, value in changes.items():
            if key in UPDATABLE_FIELDS:
                data[key] = value

        # Re-validate the merged document; field dicts become models again
        try:
            updated = Template.model_validate(data)
        except ValidationError as e:
            raise AuthoringError(format_validation_error(e)) from e
        check_template(updated)
        saved = self.store.save_template(updated)
        logger.info("Template %s updated by %s", template_id, caller.user_id)
        return saved

    def set_active(self, caller: CallerContext, template_id: str, active: bool) -> Template:
        return self.update_template(caller, template_id, {"is_active": active})

    def delete_template(self, caller: CallerContext, template_id: str) -> None:
        """Delete a template and, with it, all of its responses."""
        self._get_managed(caller, template_id)
        self.store.delete_template(template_id)
        logger.info("Template %s deleted by %s", template_id, caller.user_id)

    def list_my_templates(self, caller: CallerContext) -> list[Template]:
        if not caller.authenticated:
            raise PermissionDeniedError("Login required")
        return self.store.list_templates(owner_id=caller.user_id)

    def list_public_templates(
        self,
        page: int = 1,
        limit: int = 10,
        search: str | None = None,
    ) -> dict[str, Any]:
        """Browse active public templates, newest first.

        `search` matches title or description, case-insensitively.
        """
        page = max(page, 1)
        limit = max(limit, 1)
        templates = self.store.list_templates(public=True, active=True)
        if search:
            needle = search.lower()
            templates = [
                t for t in templates
                if needle in t.title.lower() or needle in t.description.lower()
            ]

        total = len(templates)
        start = (page - 1) * limit
        return {
            "templates": templates[start:start + limit],
            "total": total,
            "page": page,
            "total_pages": math.ceil(total / limit),
        }

    # -----------------------------------------------------------------
    # Responses
    # -----------------------------------------------------------------

    def submit_response(
        self,
        caller: CallerContext,
        template_id: str,
        values: Mapping[str, Any],
        respondent_email: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> str:
        """Validate a value map and store it as a response record.

        Every conditionally visible field is validated, whatever the
        runtime submit mode; keys that are not input fields of the
        template are rejected. A runtime from start_runtime records these
        errors instead of raising them.

        Returns:
            The new response id.

        Raises:
            TemplateNotFoundError, PermissionDeniedError, FormClosedError,
            ResponseLimitReachedError, FormValidationError
        """
        template = self.get_fillable_template(caller, template_id)

        if not caller.authenticated and not template.allow_anonymous and not respondent_email:
            raise PermissionDeniedError(
                "Login or a respondent e-mail is required for this form"
            )

        errors = self.validate_values(template, values)
        if errors:
            logger.info(
                "Response to template %s rejected: %s", template_id, sorted(errors)
            )
            raise FormValidationError(errors)

        record = ResponseRecord(
            template_id=template_id,
            respondent_id=caller.user_id if caller.authenticated else None,
            respondent_email=respondent_email,
            answers=tuple(
                ResponseAnswer(
                    field_key=f.field_key,
                    label=f.label,
                    value=values.get(f.field_key),
                )
                for f in template.input_fields
            ),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        response_id = self.store.add_response(record)
        logger.info("Response %s accepted for template %s", response_id, template_id)
        return response_id

    @staticmethod
    def validate_values(template: Template, values: Mapping[str, Any]) -> dict[str, str]:
        """Validate a complete value map against a template."""
        fields_by_key = {f.field_key: f for f in template.input_fields}
        errors = {
            key: "Unknown field" for key in values if key not in fields_by_key
        }
        for key, value in values.items():
            if key in fields_by_key and not _is_storable(value):
                errors[key] = f"{fields_by_key[key].display_name} has an unsupported value"
        visible = [
            f for f in template.input_fields
            if f.visible and is_condition_met(f, values, fields_by_key)
        ]
        for key, message in validate_page(visible, values).items():
            errors.setdefault(key, message)
        return errors

    def list_responses(self, caller: CallerContext, template_id: str) -> list[ResponseRecord]:
        """Responses of a template, for its owner or an admin."""
        self._get_managed(caller, template_id)
        return self.store.list_responses(template_id)

    def get_response(self, caller: CallerContext, response_id: str) -> ResponseRecord:
        record = self.store.get_response(response_id)
        template = self.store.get_template(record.template_id)
        if not (caller.can_manage(template.owner_id) or caller.owns(record.respondent_id)):
            raise PermissionDeniedError("Access denied")
        return record

    # -----------------------------------------------------------------
    # Runtime
    # -----------------------------------------------------------------

    def start_runtime(
        self,
        caller: CallerContext,
        template_id: str,
        respondent_email: str | None = None,
    ) -> FormRuntime:
        """Open a fill-out runtime whose submit stores a response."""
        template = self.get_fillable_template(caller, template_id)

        def submitter(values: dict[str, Any]) -> str:
            return self.submit_response(
                caller, template_id, values, respondent_email=respondent_email
            )

        return FormRuntime(template, submitter=submitter, strict_submit=self.strict_submit)

    # -----------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------

    def _get_managed(self, caller: CallerContext, template_id: str) -> Template:
        template = self.store.get_template(template_id)
        if not caller.can_manage(template.owner_id):
            raise PermissionDeniedError("Access denied")
        return template


_SCALARS = (bool, int, float, str)


def _is_storable(value: Any) -> bool:
    """Scalars, None, or a flat list of scalars."""
    if value is None or isinstance(value, _SCALARS):
        return True
    if isinstance(value, (list, tuple)):
        return all(isinstance(v, _SCALARS) for v in value)
    return False
