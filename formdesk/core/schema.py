"""
Form template schema models.

These Pydantic models define the contract between the form builder,
the fill-out runtime and the persistence layer. A template is an
ordered list of field definitions; each entry is either an input field
or a page break, discriminated by the explicit `isPageBreak` flag.

Attributes are snake_case in Python and camelCase on the wire
(`model_dump(by_alias=True)`); both spellings are accepted on input.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    model_validator,
)
from pydantic.alias_generators import to_camel


OptionValue = Union[bool, int, float, str]

# A single submitted value. Checkbox groups and multiselects hold the
# list of selected option values.
FieldValue = Union[bool, int, float, str, list[OptionValue], None]


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


# --- Enums ---


class DataType(str, Enum):
    """Type of the value a field holds."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"
    EMAIL = "email"
    URL = "url"
    FILE = "file"
    JSON = "json"
    NONE = "none"


class InputWidget(str, Enum):
    """Widget used to collect a field's value."""

    TEXT = "text"
    NUMBER = "number"
    EMAIL = "email"
    PASSWORD = "password"
    TEXTAREA = "textarea"
    SELECT = "select"
    MULTISELECT = "multiselect"
    RADIO = "radio"
    CHECKBOX = "checkbox"
    DATE = "date"
    DATETIME = "datetime"
    FILE = "file"
    URL = "url"
    COLOR = "color"
    RANGE = "range"
    PAGE_BREAK = "pageBreak"


# Widgets that cannot be rendered without a non-empty option list
WIDGETS_REQUIRING_OPTIONS = {InputWidget.SELECT, InputWidget.MULTISELECT, InputWidget.RADIO}

# Widgets whose value must carry a specific data type
_WIDGET_DATA_TYPES = {
    InputWidget.NUMBER: DataType.NUMBER,
    InputWidget.EMAIL: DataType.EMAIL,
    InputWidget.URL: DataType.URL,
}


# --- Field parts ---


class FieldOption(CamelModel):
    """One selectable choice of a select, radio, multiselect or checkbox group."""

    label: str = Field(..., description="Text shown to the respondent")
    value: OptionValue = Field(..., description="Value stored when the option is chosen")


class ValidationRule(CamelModel):
    """Optional constraints checked at submission time."""

    min_length: int | None = Field(default=None, ge=0)
    max_length: int | None = Field(default=None, ge=0)
    min: int | float | None = None
    max: int | float | None = None
    pattern: str | None = Field(
        default=None,
        description="Regular expression searched in string values",
    )


class VisibilityCondition(CamelModel):
    """Hides a field unless another field currently equals a given value."""

    depends_on_field_key: str = Field(..., min_length=1)
    equals_value: FieldValue = None


# --- Field definitions ---


class InputField(CamelModel):
    """A field that collects a value from the respondent."""

    is_page_break: Literal[False] = False
    field_key: str = Field(
        ...,
        min_length=1,
        description="Unique key of the field within its template",
    )
    label: str = Field(..., description="Display label; must be non-empty when saved")
    data_type: DataType = DataType.STRING
    input_widget: InputWidget = InputWidget.TEXT
    placeholder: str = ""
    help_text: str = ""
    required: bool = False
    default_value: Any = None
    options: list[FieldOption] = Field(default_factory=list)
    validation_rule: ValidationRule | None = None
    visibility_condition: VisibilityCondition | None = None
    visible: bool = Field(
        default=True,
        description="Statically hidden fields keep a value but are never rendered",
    )

    @property
    def is_checkbox_group(self) -> bool:
        """A checkbox with options collects a list of option values."""
        return self.input_widget == InputWidget.CHECKBOX and len(self.options) > 0

    @property
    def is_boolean_checkbox(self) -> bool:
        return self.input_widget == InputWidget.CHECKBOX and not self.options

    @property
    def is_multi_valued(self) -> bool:
        return self.input_widget == InputWidget.MULTISELECT or self.is_checkbox_group

    @property
    def is_numeric(self) -> bool:
        return (
            self.data_type == DataType.NUMBER
            or self.input_widget in {InputWidget.NUMBER, InputWidget.RANGE}
        )

    @property
    def display_name(self) -> str:
        return self.label or self.field_key or "Field"

    @model_validator(mode="after")
    def validate_widget_constraints(self) -> "InputField":
        """Check option, widget and data type agreement."""
        if self.input_widget == InputWidget.PAGE_BREAK:
            raise ValueError(
                f"Field '{self.field_key}' uses the pageBreak widget; use a page break entry"
            )
        if self.data_type == DataType.NONE:
            raise ValueError(
                f"Field '{self.field_key}' has dataType 'none', which only page breaks may use"
            )

        if self.input_widget in WIDGETS_REQUIRING_OPTIONS and not self.options:
            raise ValueError(
                f"Field '{self.field_key}' requires non-empty options "
                f"for inputWidget {self.input_widget.value}"
            )

        if self.is_boolean_checkbox and self.data_type != DataType.BOOLEAN:
            raise ValueError(
                f"Field '{self.field_key}' with inputWidget checkbox must have dataType boolean"
            )

        expected = _WIDGET_DATA_TYPES.get(self.input_widget)
        if expected is not None and self.data_type != expected:
            raise ValueError(
                f"Field '{self.field_key}' with inputWidget {self.input_widget.value} "
                f"must have dataType {expected.value}"
            )

        return self


class PageBreak(CamelModel):
    """Separator that splits the field list into wizard pages."""

    is_page_break: Literal[True] = True
    field_key: str | None = None
    label: str = ""
    input_widget: InputWidget = InputWidget.PAGE_BREAK
    data_type: DataType = DataType.NONE

    @model_validator(mode="after")
    def force_marker_types(self) -> "PageBreak":
        """A page break never carries a value, whatever the payload said."""
        self.input_widget = InputWidget.PAGE_BREAK
        self.data_type = DataType.NONE
        return self


def _field_kind(value: Any) -> str:
    if isinstance(value, dict):
        flag = value.get("isPageBreak", value.get("is_page_break", False))
    else:
        flag = getattr(value, "is_page_break", False)
    return "page_break" if flag else "input"


FieldDefinition = Annotated[
    Union[
        Annotated[InputField, Tag("input")],
        Annotated[PageBreak, Tag("page_break")],
    ],
    Discriminator(_field_kind),
]


# --- Template ---


class Template(CamelModel):
    """A user-authored dynamic form: ordered fields plus settings."""

    id: str | None = None
    owner_id: str | None = None
    title: str = ""
    description: str = ""
    fields: list[FieldDefinition] = Field(default_factory=list)
    is_public: bool = False
    allow_anonymous: bool = True
    max_responses: int | None = Field(default=None, ge=1)
    response_count: int = Field(default=0, ge=0)
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def normalize_max_responses(cls, data: Any) -> Any:
        """A cap of 0 means "no cap"."""
        if isinstance(data, dict):
            for key in ("maxResponses", "max_responses"):
                if data.get(key) == 0:
                    data = {**data, key: None}
        return data

    @model_validator(mode="after")
    def validate_cross_field_references(self) -> "Template":
        """Validate field key uniqueness and visibility condition references."""
        field_keys = set()

        for f in self.input_fields:
            if f.field_key in field_keys:
                raise ValueError(f"Duplicate field key: '{f.field_key}'")
            field_keys.add(f.field_key)

        for f in self.input_fields:
            condition = f.visibility_condition
            if condition is None:
                continue
            if condition.depends_on_field_key == f.field_key:
                raise ValueError(f"Field '{f.field_key}' has a visibility condition on itself")
            if condition.depends_on_field_key not in field_keys:
                raise ValueError(
                    f"Field '{f.field_key}' has a visibility condition referencing "
                    f"non-existent field '{condition.depends_on_field_key}'"
                )

        self._check_condition_cycles()
        return self

    def _check_condition_cycles(self) -> None:
        depends_on = {
            f.field_key: f.visibility_condition.depends_on_field_key
            for f in self.input_fields
            if f.visibility_condition is not None
        }
        for start in depends_on:
            seen = {start}
            current = depends_on.get(start)
            while current is not None:
                if current in seen:
                    raise ValueError(
                        f"Field '{start}' has a circular visibility condition via '{current}'"
                    )
                seen.add(current)
                current = depends_on.get(current)

    @property
    def input_fields(self) -> list[InputField]:
        """All fields that carry a value, in template order."""
        return [f for f in self.fields if not f.is_page_break]

    def get_field(self, field_key: str) -> InputField | None:
        for f in self.input_fields:
            if f.field_key == field_key:
                return f
        return None

    @property
    def is_full(self) -> bool:
        return self.max_responses is not None and self.response_count >= self.max_responses


# --- Responses ---


class ResponseAnswer(CamelModel):
    """One answered field, with the label it had when submitted."""

    model_config = ConfigDict(frozen=True)

    field_key: str
    label: str
    value: FieldValue = None


class ResponseRecord(CamelModel):
    """An immutable submitted answer set tied to a template."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    template_id: str
    respondent_id: str | None = None
    respondent_email: str | None = None
    answers: tuple[ResponseAnswer, ...] = ()
    submitted_at: datetime | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    def as_value_map(self) -> dict[str, FieldValue]:
        return {a.field_key: a.value for a in self.answers}
