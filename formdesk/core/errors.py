"""
Error taxonomy for the formdesk core.

Every error raised by the core derives from FormDeskError so the HTTP
layer can map whole families to a status code:

- AuthoringError          — a template failed its save-time checks
- FormValidationError     — submitted values failed field validation
- NotFoundError           — the referenced resource does not exist
- PermissionDeniedError   — the resource exists but the caller may not touch it
- FormClosedError         — the template is inactive or full
- StoreError              — the persistence collaborator failed
"""


class FormDeskError(Exception):
    """Base class for all formdesk errors."""


class AuthoringError(FormDeskError):
    """Raised when a template cannot be saved.

    Carries every problem found, not just the first one, so the builder
    can show them all at once.
    """

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "Invalid template")


class FormValidationError(FormDeskError):
    """Raised when submitted values fail validation.

    `errors` maps field keys to human-readable messages.
    """

    def __init__(self, errors: dict[str, str]):
        self.errors = dict(errors)
        super().__init__(f"{len(self.errors)} field(s) failed validation")


class NotFoundError(FormDeskError):
    """A referenced resource does not exist."""

    resource = "Resource"

    def __init__(self, resource_id: str):
        self.resource_id = resource_id
        super().__init__(f"{self.resource} '{resource_id}' not found")


class TemplateNotFoundError(NotFoundError):
    resource = "Template"


class ResponseNotFoundError(NotFoundError):
    resource = "Response"


class AssignmentNotFoundError(NotFoundError):
    resource = "Assignment"


class SessionNotFoundError(NotFoundError):
    resource = "Session"


class PermissionDeniedError(FormDeskError):
    """The resource exists but the caller lacks ownership or role."""


class FormClosedError(FormDeskError):
    """The template no longer accepts responses."""


class ResponseLimitReachedError(FormClosedError):
    """The template's maxResponses cap has been reached."""

    def __init__(self, template_id: str, max_responses: int | None = None):
        self.template_id = template_id
        self.max_responses = max_responses
        super().__init__(f"Maximum responses reached for template '{template_id}'")


class StoreError(FormDeskError):
    """The persistence collaborator failed (unreachable, corrupt row, ...)."""


class UnknownFieldError(FormDeskError, KeyError):
    """A value was addressed to a field key the template does not define."""

    def __init__(self, field_key: str):
        self.field_key = field_key
        super().__init__(f"Field '{field_key}' does not exist in the template")

    def __str__(self) -> str:
        return self.args[0]


class FormAlreadySubmittedError(FormDeskError):
    """The runtime was used after its values were submitted."""
