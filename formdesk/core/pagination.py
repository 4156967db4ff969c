"""
Splits a template's field list into wizard pages.

Page breaks act purely as separators: they never appear inside a page,
and leading, trailing or repeated breaks never produce an empty page.
"""

from collections.abc import Sequence

from formdesk.core.schema import FieldDefinition, InputField


def paginate(fields: Sequence[FieldDefinition]) -> list[list[InputField]]:
    """Group statically visible input fields into pages.

    Conditional visibility is not applied here; it depends on runtime
    values and is evaluated by the runtime when a page is shown.

    Args:
        fields: The template's ordered field definitions.

    Returns:
        A non-empty list of pages. When nothing is visible the result is
        a single empty page.
    """
    pages: list[list[InputField]] = [[]]

    for field in fields:
        if field.is_page_break:
            if pages[-1]:
                pages.append([])
        elif field.visible:
            pages[-1].append(field)

    # A trailing break leaves an empty bucket behind
    if len(pages) > 1 and not pages[-1]:
        pages.pop()

    return pages


def page_count(fields: Sequence[FieldDefinition]) -> int:
    return len(paginate(fields))
