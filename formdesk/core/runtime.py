"""
Form runtime for a single fill-out attempt.

Manages the state of a multi-page wizard session:
- Which page the respondent is on
- The current value of every input field across all pages
- Per-field error messages from the last navigation or submit attempt
- Conditional visibility of fields on the current page
- Handing the final value map to a submitter collaborator
"""

import copy
import logging
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from formdesk.core.errors import (
    FormAlreadySubmittedError,
    FormValidationError,
    UnknownFieldError,
)
from formdesk.core.pagination import paginate
from formdesk.core.schema import InputField, Template
from formdesk.core.validation import validate_page
from formdesk.core.visibility import is_condition_met

logger = logging.getLogger(__name__)


# Receives the full value map on a successful submit. Whatever it
# returns is kept on the runtime as `submission_result`.
Submitter = Callable[[dict[str, Any]], Any]


class RuntimeStatus(str, Enum):
    EDITING = "editing"
    SUBMITTED = "submitted"


class FormRuntimeState(BaseModel):
    """Serializable snapshot of a runtime, for hosts that persist sessions."""

    template_id: str | None = None
    status: RuntimeStatus = RuntimeStatus.EDITING
    page_index: int = 0
    values: dict[str, Any] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)


def initial_value(field: InputField) -> Any:
    """Starting value of a field before the respondent touches it."""
    if field.is_boolean_checkbox:
        return bool(field.default_value)
    if field.is_multi_valued:
        default = field.default_value
        return list(default) if isinstance(default, (list, tuple)) else []
    if field.default_value is None:
        return ""
    return copy.deepcopy(field.default_value)


class FormRuntime:
    """Drives one respondent through a template's pages.

    Navigation forward and the final submit are gated by validation;
    going back never is. Values entered on any page survive navigation.

    Args:
        template: The template being filled in.
        submitter: Called with the value map on a successful submit.
            A FormValidationError it raises is recorded like a local
            validation failure; other exceptions propagate to the caller
            and leave the runtime editable.
        strict_submit: When True (the default) submit re-validates every
            page. When False only the current page is checked; earlier
            pages are trusted because next() already validated them, though a
            submitter may still reject them.
    """

    def __init__(
        self,
        template: Template,
        submitter: Submitter | None = None,
        strict_submit: bool = True,
    ):
        self.template = template
        self.submitter = submitter
        self.strict_submit = strict_submit
        self.pages: list[list[InputField]] = paginate(template.fields)
        self._fields_by_key = {f.field_key: f for f in template.input_fields}

        self.values: dict[str, Any] = {
            f.field_key: initial_value(f) for f in template.input_fields
        }
        self.errors: dict[str, str] = {}
        self.page_index = 0
        self.status = RuntimeStatus.EDITING
        self.submission_result: Any = None

    # -----------------------------------------------------------------
    # Page resolution
    # -----------------------------------------------------------------

    @property
    def page_count(self) -> int:
        return len(self.pages)

    @property
    def is_first_page(self) -> bool:
        return self.page_index == 0

    @property
    def is_last_page(self) -> bool:
        return self.page_index == self.page_count - 1

    @property
    def is_submitted(self) -> bool:
        return self.status == RuntimeStatus.SUBMITTED

    def visible_fields(self, page_index: int) -> list[InputField]:
        """Fields of a page whose visibility condition currently holds."""
        return [
            f for f in self.pages[page_index]
            if is_condition_met(f, self.values, self._fields_by_key)
        ]

    @property
    def current_fields(self) -> list[InputField]:
        return self.visible_fields(self.page_index)

    def is_page_valid(self, page_index: int | None = None) -> bool:
        """Check a page without recording errors (for enabling a Next button)."""
        index = self.page_index if page_index is None else page_index
        return not validate_page(self.visible_fields(index), self.values)

    # -----------------------------------------------------------------
    # Value management
    # -----------------------------------------------------------------

    def set_value(self, field_key: str, value: Any) -> None:
        """Store a value and clear that field's error.

        Re-validation happens on the next navigation or submit attempt,
        not here.

        Raises:
            UnknownFieldError: If the key is not an input field of the template.
            FormAlreadySubmittedError: If the runtime has been submitted.
        """
        self._ensure_editing()
        if field_key not in self._fields_by_key:
            raise UnknownFieldError(field_key)
        self.values[field_key] = value
        self.errors.pop(field_key, None)

    def set_values(self, values: Mapping[str, Any]) -> None:
        """Set several values at once; stops at the first unknown key."""
        for field_key, value in values.items():
            self.set_value(field_key, value)

    def toggle_option(self, field_key: str, option_value: Any, checked: bool) -> list:
        """Select or deselect one option of a checkbox group or multiselect.

        The stored list always follows the options' declaration order.

        Returns:
            The new list of selected option values.
        """
        self._ensure_editing()
        field = self._fields_by_key.get(field_key)
        if field is None:
            raise UnknownFieldError(field_key)
        if not field.is_multi_valued:
            raise ValueError(f"Field '{field_key}' does not hold multiple values")

        option_values = [o.value for o in field.options]
        if option_value not in option_values:
            raise ValueError(f"'{option_value}' is not an option of field '{field_key}'")

        current = self.values.get(field_key)
        selected = set(current) if isinstance(current, (list, tuple)) else set()
        if checked:
            selected.add(option_value)
        else:
            selected.discard(option_value)

        ordered = [v for v in option_values if v in selected]
        self.set_value(field_key, ordered)
        return ordered

    def get_value(self, field_key: str) -> Any:
        return self.values.get(field_key)

    def submitted_values(self) -> dict[str, Any]:
        """The value map handed to the submitter: every input field, in template order."""
        return {
            f.field_key: copy.deepcopy(self.values.get(f.field_key))
            for f in self.template.input_fields
        }

    # -----------------------------------------------------------------
    # Navigation
    # -----------------------------------------------------------------

    def next(self) -> bool:
        """Validate the current page and advance if it is valid.

        Returns:
            True if the page was valid (the index moved, unless already
            on the last page), False if errors were recorded.
        """
        self._ensure_editing()
        self.errors = validate_page(self.current_fields, self.values)
        if self.errors:
            logger.debug(
                "Page %d of template %s blocked: %s",
                self.page_index, self.template.id, sorted(self.errors),
            )
            return False

        self.page_index = min(self.page_index + 1, self.page_count - 1)
        logger.debug("Template %s moved to page %d", self.template.id, self.page_index)
        return True

    def back(self) -> None:
        """Go to the previous page without validating."""
        self._ensure_editing()
        self.page_index = max(0, self.page_index - 1)

    def submit(self) -> bool:
        """Validate and hand the values to the submitter.

        Returns:
            True if the runtime is now submitted, False if validation
            failed (errors are populated and, in strict mode, the runtime
            moves to the first page with errors).
        """
        self._ensure_editing()

        if self.strict_submit:
            errors: dict[str, str] = {}
            first_invalid: int | None = None
            for index in range(self.page_count):
                page_errors = validate_page(self.visible_fields(index), self.values)
                if page_errors and first_invalid is None:
                    first_invalid = index
                errors.update(page_errors)
            if first_invalid is not None:
                self.page_index = first_invalid
        else:
            errors = validate_page(self.current_fields, self.values)

        self.errors = errors
        if errors:
            logger.info(
                "Submit of template %s rejected: %d field error(s)",
                self.template.id, len(errors),
            )
            return False

        payload = self.submitted_values()
        if self.submitter is not None:
            try:
                self.submission_result = self.submitter(payload)
            except FormValidationError as e:
                self._reject(e.errors)
                logger.info(
                    "Submit of template %s rejected by submitter: %s",
                    self.template.id, sorted(e.errors),
                )
                return False

        self.status = RuntimeStatus.SUBMITTED
        logger.info("Template %s submitted", self.template.id)
        return True

    # -----------------------------------------------------------------
    # Snapshots
    # -----------------------------------------------------------------

    def snapshot(self) -> FormRuntimeState:
        return FormRuntimeState(
            template_id=self.template.id,
            status=self.status,
            page_index=self.page_index,
            values=copy.deepcopy(self.values),
            errors=dict(self.errors),
        )

    @classmethod
    def restore(
        cls,
        template: Template,
        state: FormRuntimeState,
        submitter: Submitter | None = None,
        strict_submit: bool = True,
    ) -> "FormRuntime":
        """Rebuild a runtime from a snapshot.

        Values for fields that no longer exist are dropped, new fields get
        their initial value, and the page index is clamped to the current
        page count.
        """
        runtime = cls(template, submitter=submitter, strict_submit=strict_submit)
        for field_key, value in state.values.items():
            if field_key in runtime.values:
                runtime.values[field_key] = value
        runtime.errors = {
            k: v for k, v in state.errors.items() if k in runtime.values
        }
        runtime.page_index = min(max(state.page_index, 0), runtime.page_count - 1)
        runtime.status = state.status
        return runtime

    # -----------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------

    def _ensure_editing(self) -> None:
        if self.status == RuntimeStatus.SUBMITTED:
            raise FormAlreadySubmittedError(
                f"Template '{self.template.id}' has already been submitted"
            )

    def _reject(self, errors: Mapping[str, str]) -> None:
        """Record errors reported after local checks passed.

        Moves to the first page holding a failing field; errors for keys
        that are not on any page leave the page index unchanged.
        """
        self.errors = dict(errors)
        for index, page in enumerate(self.pages):
            if any(f.field_key in self.errors for f in page):
                self.page_index = index
                return
