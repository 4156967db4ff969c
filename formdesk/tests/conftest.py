"""
Shared test fixtures for the formdesk test suite.

Provides the bundled example templates, callers with different roles,
and a service wired to a fresh in-memory store.
"""

import json
from pathlib import Path

import pytest

from formdesk.core.identity import CallerContext
from formdesk.core.schema import Template
from formdesk.core.service import FormService
from formdesk.core.store import InMemoryFormStore

SCHEMAS_DIR = Path(__file__).parent.parent / "schemas"


def load_template(filename: str) -> Template:
    """Load an example template from the schemas directory."""
    with open(SCHEMAS_DIR / filename) as f:
        return Template.model_validate(json.load(f))


@pytest.fixture
def registration_template() -> Template:
    return load_template("registration_wizard.json")


@pytest.fixture
def feedback_template() -> Template:
    return load_template("feedback_survey.json")


@pytest.fixture
def owner() -> CallerContext:
    return CallerContext.user("owner-1")


@pytest.fixture
def other_user() -> CallerContext:
    return CallerContext.user("user-2")


@pytest.fixture
def admin() -> CallerContext:
    return CallerContext.admin("admin-1")


@pytest.fixture
def anonymous() -> CallerContext:
    return CallerContext.anonymous()


@pytest.fixture
def store() -> InMemoryFormStore:
    return InMemoryFormStore()


@pytest.fixture
def service(store) -> FormService:
    return FormService(store)
