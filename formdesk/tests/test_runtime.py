"""
Unit tests for the FormRuntime.

Tests cover:
- Initial values per widget (checkbox, multi-valued, defaults)
- next() is gated by validation of the visible fields on the current page
- back() never validates and keeps values
- set_value clears that field's error; unknown keys are rejected
- Checkbox groups keep selections in option order
- Conditional fields are skipped by validation while hidden
- Strict submit re-validates every page and jumps to the first bad one
- Lenient submit only checks the current page
- The submitter receives the full value map; its failure leaves the runtime editable
- Snapshots restore values and clamp the page index
"""

import pytest

from formdesk.core.errors import FormAlreadySubmittedError, UnknownFieldError
from formdesk.core.runtime import FormRuntime, RuntimeStatus, initial_value
from formdesk.core.schema import Template


# --- Fixtures ---


@pytest.fixture
def two_page_template() -> Template:
    """name (required) | age (number, min 18)."""
    return Template.model_validate({
        "id": "t-two-page",
        "title": "Two pages",
        "fields": [
            {"fieldKey": "name", "label": "Name", "required": True, "inputWidget": "text"},
            {"isPageBreak": True},
            {
                "fieldKey": "age",
                "label": "Age",
                "dataType": "number",
                "inputWidget": "number",
                "validationRule": {"min": 18},
            },
        ],
    })


@pytest.fixture
def checkbox_template() -> Template:
    return Template.model_validate({
        "id": "t-checkbox",
        "title": "Checkbox",
        "fields": [
            {
                "fieldKey": "letters",
                "label": "Letters",
                "inputWidget": "checkbox",
                "options": [{"label": "A", "value": "a"}, {"label": "B", "value": "b"}],
            },
        ],
    })


class RecordingSubmitter:
    def __init__(self, result="response-1", error: Exception | None = None):
        self.calls: list[dict] = []
        self.result = result
        self.error = error

    def __call__(self, values):
        self.calls.append(values)
        if self.error is not None:
            raise self.error
        return self.result


# =============================================================
# Test: Initial state
# =============================================================


class TestInitialState:

    def test_starts_on_first_page(self, two_page_template):
        runtime = FormRuntime(two_page_template)
        assert runtime.page_index == 0
        assert runtime.page_count == 2
        assert runtime.is_first_page
        assert not runtime.is_last_page
        assert runtime.status == RuntimeStatus.EDITING
        assert runtime.errors == {}

    def test_initial_values(self, registration_template):
        runtime = FormRuntime(registration_template)
        assert runtime.values["full_name"] == ""
        assert runtime.values["sessions"] == []
        assert runtime.values["accept_terms"] is False
        assert runtime.values["guests"] == 0

    def test_initial_value_copies_defaults(self, feedback_template):
        field = feedback_template.get_field("internal_ref")
        assert initial_value(field) == "web-survey"

    def test_hidden_field_keeps_default(self, feedback_template):
        runtime = FormRuntime(feedback_template)
        assert runtime.values["internal_ref"] == "web-survey"
        assert all(f.field_key != "internal_ref" for f in runtime.current_fields)

    def test_single_page_template(self, feedback_template):
        runtime = FormRuntime(feedback_template)
        assert runtime.page_count == 1
        assert runtime.is_first_page and runtime.is_last_page


# =============================================================
# Test: Navigation
# =============================================================


class TestNavigation:

    def test_next_blocked_by_required_field(self, two_page_template):
        runtime = FormRuntime(two_page_template)
        runtime.set_value("name", "")
        assert runtime.next() is False
        assert runtime.page_index == 0
        assert runtime.errors == {"name": "Name is required"}

    def test_next_advances_when_valid(self, two_page_template):
        runtime = FormRuntime(two_page_template)
        runtime.set_value("name", "Alice")
        assert runtime.next() is True
        assert runtime.page_index == 1
        assert runtime.errors == {}

    def test_next_on_last_page_stays(self, two_page_template):
        runtime = FormRuntime(two_page_template)
        runtime.set_value("name", "Alice")
        runtime.next()
        assert runtime.next() is True
        assert runtime.page_index == 1

    def test_back_skips_validation_and_keeps_values(self, two_page_template):
        runtime = FormRuntime(two_page_template)
        runtime.set_value("name", "Alice")
        runtime.next()
        runtime.set_value("age", "3")
        runtime.back()
        assert runtime.page_index == 0
        assert runtime.values["age"] == "3"

    def test_back_on_first_page_is_noop(self, two_page_template):
        runtime = FormRuntime(two_page_template)
        runtime.back()
        assert runtime.page_index == 0

    def test_set_value_clears_error(self, two_page_template):
        runtime = FormRuntime(two_page_template)
        runtime.next()
        assert "name" in runtime.errors
        runtime.set_value("name", "A")
        assert "name" not in runtime.errors

    def test_unknown_field_rejected(self, two_page_template):
        runtime = FormRuntime(two_page_template)
        with pytest.raises(UnknownFieldError):
            runtime.set_value("nope", "x")

    def test_is_page_valid_records_nothing(self, two_page_template):
        runtime = FormRuntime(two_page_template)
        assert runtime.is_page_valid() is False
        assert runtime.errors == {}


# =============================================================
# Test: Conditional visibility at runtime
# =============================================================


class TestConditionalFields:

    def test_hidden_required_field_does_not_block(self, registration_template):
        runtime = FormRuntime(registration_template)
        runtime.set_values({"full_name": "Ann", "email": "ann@example.com"})
        assert runtime.next() is True

        runtime.set_value("ticket_type", "standard")
        keys = [f.field_key for f in runtime.current_fields]
        assert "student_id" not in keys
        assert runtime.next() is True

    def test_revealed_required_field_blocks(self, registration_template):
        runtime = FormRuntime(registration_template)
        runtime.set_values({"full_name": "Ann", "email": "ann@example.com"})
        runtime.next()

        runtime.set_value("ticket_type", "student")
        assert "student_id" in [f.field_key for f in runtime.current_fields]
        assert runtime.next() is False
        assert runtime.errors == {"student_id": "Student ID is required"}

    def test_hidden_field_keeps_value(self, registration_template):
        runtime = FormRuntime(registration_template)
        runtime.set_values({"ticket_type": "student", "student_id": "S-1"})
        runtime.set_value("ticket_type", "speaker")
        assert runtime.values["student_id"] == "S-1"


# =============================================================
# Test: Checkbox groups
# =============================================================


class TestCheckboxGroup:

    def test_selecting_both_options_in_order(self, checkbox_template):
        submitter = RecordingSubmitter()
        runtime = FormRuntime(checkbox_template, submitter=submitter)
        runtime.toggle_option("letters", "b", True)
        runtime.toggle_option("letters", "a", True)
        assert runtime.values["letters"] == ["a", "b"]

        assert runtime.submit() is True
        assert submitter.calls == [{"letters": ["a", "b"]}]

    def test_deselect(self, checkbox_template):
        runtime = FormRuntime(checkbox_template)
        runtime.toggle_option("letters", "a", True)
        assert runtime.toggle_option("letters", "a", False) == []

    def test_unknown_option_rejected(self, checkbox_template):
        runtime = FormRuntime(checkbox_template)
        with pytest.raises(ValueError):
            runtime.toggle_option("letters", "z", True)

    def test_single_valued_field_rejected(self, two_page_template):
        runtime = FormRuntime(two_page_template)
        with pytest.raises(ValueError):
            runtime.toggle_option("name", "x", True)


# =============================================================
# Test: Submit
# =============================================================


class TestSubmit:

    def test_submit_fails_on_last_page_bound(self, two_page_template):
        runtime = FormRuntime(two_page_template)
        runtime.set_value("name", "Alice")
        assert runtime.next() is True
        runtime.set_value("age", "15")
        assert runtime.submit() is False
        assert runtime.errors == {"age": "Age must be ≥ 18"}
        assert runtime.page_index == 1
        assert runtime.status == RuntimeStatus.EDITING

    def test_strict_submit_jumps_to_first_invalid_page(self, two_page_template):
        runtime = FormRuntime(two_page_template)
        runtime.set_value("name", "Alice")
        runtime.next()
        # Clear page 1 after leaving it
        runtime.set_value("name", "")
        runtime.set_value("age", 30)
        assert runtime.submit() is False
        assert runtime.page_index == 0
        assert runtime.errors == {"name": "Name is required"}

    def test_lenient_submit_checks_current_page_only(self, two_page_template):
        submitter = RecordingSubmitter()
        runtime = FormRuntime(two_page_template, submitter=submitter, strict_submit=False)
        runtime.set_value("name", "Alice")
        runtime.next()
        runtime.set_value("name", "")
        runtime.set_value("age", 30)
        assert runtime.submit() is True
        assert submitter.calls == [{"name": "", "age": 30}]

    def test_successful_submit(self, two_page_template):
        submitter = RecordingSubmitter(result="r-42")
        runtime = FormRuntime(two_page_template, submitter=submitter)
        runtime.set_values({"name": "Alice", "age": 30})
        assert runtime.submit() is True
        assert runtime.is_submitted
        assert runtime.submission_result == "r-42"
        assert submitter.calls == [{"name": "Alice", "age": 30}]

    def test_submitter_failure_keeps_runtime_editable(self, two_page_template):
        submitter = RecordingSubmitter(error=RuntimeError("store down"))
        runtime = FormRuntime(two_page_template, submitter=submitter)
        runtime.set_values({"name": "Alice", "age": 30})
        with pytest.raises(RuntimeError):
            runtime.submit()
        assert runtime.status == RuntimeStatus.EDITING
        runtime.set_value("name", "Bob")

    def test_no_changes_after_submit(self, two_page_template):
        runtime = FormRuntime(two_page_template)
        runtime.set_values({"name": "Alice", "age": 30})
        runtime.submit()
        with pytest.raises(FormAlreadySubmittedError):
            runtime.set_value("name", "Bob")
        with pytest.raises(FormAlreadySubmittedError):
            runtime.next()

    def test_submitted_values_are_copies(self, checkbox_template):
        submitter = RecordingSubmitter()
        runtime = FormRuntime(checkbox_template, submitter=submitter)
        runtime.toggle_option("letters", "a", True)
        runtime.submit()
        submitter.calls[0]["letters"].append("mutated")
        assert runtime.values["letters"] == ["a"]


# =============================================================
# Test: Snapshots
# =============================================================


class TestSnapshots:

    def test_round_trip(self, two_page_template):
        runtime = FormRuntime(two_page_template)
        runtime.set_value("name", "Alice")
        runtime.next()
        restored = FormRuntime.restore(two_page_template, runtime.snapshot())
        assert restored.page_index == 1
        assert restored.values == runtime.values

    def test_restore_drops_removed_fields_and_clamps_page(self, two_page_template):
        runtime = FormRuntime(two_page_template)
        runtime.set_value("name", "Alice")
        runtime.next()
        state = runtime.snapshot()

        single_page = two_page_template.model_copy(
            update={"fields": [two_page_template.fields[0]]}
        )
        restored = FormRuntime.restore(single_page, state)
        assert restored.page_index == 0
        assert restored.values == {"name": "Alice"}
