"""
Template authoring.

The builder edits a draft: a plain list of field dicts that may be
incomplete while the author works (a select without options yet, an
empty label). Nothing is enforced until `build()` or `save()`, which
report every problem at once as an AuthoringError.
"""

from typing import Any

from pydantic import ValidationError

from formdesk.core.errors import AuthoringError
from formdesk.core.identity import CallerContext
from formdesk.core.schema import Template
from formdesk.core.utils import generate_field_key


def check_template(template: Template) -> None:
    """Save-time checks that the schema models do not enforce themselves.

    Raises:
        AuthoringError: Missing title, no input field, or an unlabeled field.
    """
    problems = _authoring_problems(
        template.title,
        [f.model_dump() for f in template.fields],
    )
    if problems:
        raise AuthoringError(problems)


def _authoring_problems(title: str, fields: list[dict[str, Any]]) -> list[str]:
    problems: list[str] = []
    if not (title or "").strip():
        problems.append("Title is required")

    input_fields = [(i, f) for i, f in enumerate(fields, start=1) if not _is_break(f)]
    if not input_fields:
        problems.append("At least one field is required")

    for position, field in input_fields:
        if not str(field.get("label") or "").strip():
            key = field.get("field_key") or field.get("fieldKey") or "?"
            problems.append(f"Field {position} ({key}): label is required")

    return problems


def _is_break(field: dict[str, Any]) -> bool:
    return bool(field.get("is_page_break", field.get("isPageBreak", False)))


def format_validation_error(error: ValidationError) -> list[str]:
    messages = []
    for item in error.errors():
        msg = item["msg"].removeprefix("Value error, ")
        loc = ".".join(str(part) for part in item["loc"])
        messages.append(f"{loc}: {msg}" if loc else msg)
    return messages


class TemplateBuilder:
    """Mutable draft of a template.

    Args:
        title: Template title.
        description: Template description.
        template_id: Set when editing an existing template; `save()`
            then updates it instead of creating a new one.
    """

    def __init__(
        self,
        title: str = "",
        description: str = "",
        template_id: str | None = None,
    ):
        self.title = title
        self.description = description
        self.template_id = template_id
        self.is_public = False
        self.allow_anonymous = True
        self.max_responses: int | None = None
        self.is_active = True
        self.fields: list[dict[str, Any]] = []

    @classmethod
    def from_template(cls, template: Template) -> "TemplateBuilder":
        builder = cls(template.title, template.description, template_id=template.id)
        builder.is_public = template.is_public
        builder.allow_anonymous = template.allow_anonymous
        builder.max_responses = template.max_responses
        builder.is_active = template.is_active
        builder.fields = [f.model_dump(exclude_none=True) for f in template.fields]
        return builder

    # -----------------------------------------------------------------
    # Fields
    # -----------------------------------------------------------------

    def add_field(self, **attrs: Any) -> int:
        """Append an input field and return its index.

        A field key is generated when none is given.
        """
        existing = {f.get("field_key") for f in self.fields if not _is_break(f)}
        field = {
            "field_key": generate_field_key(existing),
            "label": "",
            "data_type": "string",
            "input_widget": "text",
            "required": False,
            "options": [],
        }
        field.update(attrs)
        field["is_page_break"] = False
        self.fields.append(field)
        return len(self.fields) - 1

    def add_page_break(self, label: str = "") -> int:
        self.fields.append({"is_page_break": True, "label": label})
        return len(self.fields) - 1

    def update_field(self, index: int, **changes: Any) -> dict[str, Any]:
        field = self._input_field(index)
        field.update(changes)
        return field

    def remove_field(self, index: int) -> dict[str, Any]:
        return self.fields.pop(index)

    def move_field(self, index: int, offset: int) -> bool:
        """Swap an entry with its neighbour (offset -1 or +1).

        Returns False when the move would leave the list.
        """
        if offset not in (-1, 1):
            raise ValueError("offset must be -1 or 1")
        if not 0 <= index < len(self.fields):
            raise IndexError(f"No field at index {index}")
        target = index + offset
        if target < 0 or target >= len(self.fields):
            return False
        self.fields[index], self.fields[target] = self.fields[target], self.fields[index]
        return True

    # -----------------------------------------------------------------
    # Options
    # -----------------------------------------------------------------

    def add_option(self, index: int, label: str = "", value: Any = "") -> int:
        options = self._input_field(index).setdefault("options", [])
        options.append({"label": label, "value": value})
        return len(options) - 1

    def update_option(
        self,
        index: int,
        option_index: int,
        label: str | None = None,
        value: Any = None,
    ) -> dict[str, Any]:
        option = self._input_field(index).setdefault("options", [])[option_index]
        if label is not None:
            option["label"] = label
        if value is not None:
            option["value"] = value
        return option

    def remove_option(self, index: int, option_index: int) -> dict[str, Any]:
        return self._input_field(index).setdefault("options", []).pop(option_index)

    # -----------------------------------------------------------------
    # Saving
    # -----------------------------------------------------------------

    def build(self) -> Template:
        """Turn the draft into a validated Template.

        Raises:
            AuthoringError: Listing every problem found.
        """
        problems = _authoring_problems(self.title, self.fields)
        try:
            template = Template.model_validate(
                {
                    "id": self.template_id,
                    "title": self.title.strip(),
                    "description": self.description,
                    "fields": self.fields,
                    "is_public": self.is_public,
                    "allow_anonymous": self.allow_anonymous,
                    "max_responses": self.max_responses,
                    "is_active": self.is_active,
                }
            )
        except ValidationError as e:
            raise AuthoringError(problems + format_validation_error(e)) from e

        if problems:
            raise AuthoringError(problems)
        return template

    def save(self, service: Any, caller: CallerContext) -> Template:
        """Create the template, or update it when the builder edits an existing one."""
        template = self.build()
        if self.template_id is None:
            saved = service.create_template(caller, template)
            self.template_id = saved.id
            return saved

        return service.update_template(
            caller,
            self.template_id,
            {
                "title": template.title,
                "description": template.description,
                "fields": template.fields,
                "is_public": template.is_public,
                "allow_anonymous": template.allow_anonymous,
                "max_responses": template.max_responses,
                "is_active": template.is_active,
            },
        )

    # -----------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------

    def _input_field(self, index: int) -> dict[str, Any]:
        field = self.fields[index]
        if _is_break(field):
            raise ValueError(f"Entry {index} is a page break")
        return field
