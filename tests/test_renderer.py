from datetime import datetime, timezone

import pytest

from hypothesis_highlights.errors import TemplateSyntaxError
from hypothesis_highlights.models import Annotation, SourceDocument
from hypothesis_highlights.renderer import (
    DEFAULT_TEMPLATE,
    display_name,
    is_valid,
    render,
    unknown_fields,
    validate,
)


def make_annotation(annotation_id: str, text: str, **kwargs) -> Annotation:
    base = {
        "id": annotation_id,
        "document_id": "https://example.com/doc-a",
        "document_title": "Doc A",
        "uri": "https://example.com/doc-a",
        "text": text,
        "created": datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc),
        "updated": datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc),
        "user": "acct:reader@hypothes.is",
    }
    base.update(kwargs)
    return Annotation(**base)


def make_document(*annotations: Annotation) -> SourceDocument:
    return SourceDocument(
        id="https://example.com/doc-a",
        title="Doc A",
        uri="https://example.com/doc-a",
        annotations=annotations,
    )


def test_render_repeats_highlights_and_drops_standalone_section_lines():
    template = "# {{title}}\n{{#highlights}}\n- {{text}}{{#note}} ({{note}}){{/note}}\n{{/highlights}}"
    document = make_document(make_annotation("a1", "First"), make_annotation("a2", "Second", note="Why"))

    assert render(template, document) == "# Doc A\n- First\n- Second (Why)\n"


def test_render_keeps_literal_text_verbatim():
    template = "  {not a tag} }} {{ title }}\n\n\ttrailing  \n"

    assert render(template, make_document()) == "  {not a tag} }} Doc A\n\n\ttrailing  \n"


def test_unknown_fields_render_empty_and_are_reported():
    template = "{{title}}|{{author}}|{{#highlights}}{{colour}}{{/highlights}}"
    document = make_document(make_annotation("a1", "First"))

    assert render(template, document) == "Doc A||"
    assert unknown_fields(template) == ["author", "colour"]
    assert unknown_fields(DEFAULT_TEMPLATE) == []


def test_highlight_fields_are_not_known_outside_the_highlights_section():
    assert unknown_fields("{{note}}") == ["note"]


def test_comments_are_removed():
    template = "{{! header }}\nBody {{! inline }}end"

    assert render(template, make_document()) == "Body end"


def test_dates_use_the_given_format():
    annotation = make_annotation(
        "a1",
        "First",
        created=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        updated=datetime(2024, 2, 3, 4, 5, 6, tzinfo=timezone.utc),
    )
    document = make_document(annotation)

    assert render("{{created}} / {{updated}}", document) == "2024-01-02 03:04:05 / 2024-02-03 04:05:06"
    assert render("{{#highlights}}{{updated}}{{/highlights}}", document, "%d.%m.%Y") == "03.02.2024"


def test_default_template_renders_metadata_and_highlights():
    first = make_annotation("a1", "First passage", tags=("to read",))
    second = make_annotation(
        "a2",
        "Second passage",
        note="A thought",
        incontext_url="https://hyp.is/a2",
        created=datetime(2024, 3, 2, tzinfo=timezone.utc),
    )

    output = render(DEFAULT_TEMPLATE, make_document(first, second))

    assert output.startswith("# Doc A\n\n## Metadata\n- Title: Doc A\n- Reference: https://example.com/doc-a\n")
    assert "- Tags: #to-read\n" in output
    assert "- First passage\n  - Tags: #to-read\n- Second passage" in output
    assert "[Updated on 2024-03-01 10:00:00](https://hyp.is/a2)" in output
    assert output.endswith("  - Annotation: A thought\n")
    assert output.count("Annotation:") == 1


def test_render_is_pure():
    document = make_document(make_annotation("a1", "First"), make_annotation("a2", "Second"))

    assert render(DEFAULT_TEMPLATE, document) == render(DEFAULT_TEMPLATE, document)


@pytest.mark.parametrize(
    "template, position, reason",
    [
        ("Hello {{title", 6, "unterminated tag"),
        ("{{#highlights}}text", 0, "section 'highlights' is never closed"),
        ("ok {{/note}}", 3, "section 'note' closed but never opened"),
        ("{{#note}}{{/tags}}", 9, "section 'note' closed by 'tags'"),
        ("{{bad name}}", 0, "invalid field name 'bad name'"),
        ("a {{ }}", 2, "empty tag"),
        ("{{ti{{tle}}", 0, "tag opened inside another tag"),
        ("{{#highlights}}{{#highlights}}{{/highlights}}{{/highlights}}", 15, "'highlights' sections cannot be nested"),
    ],
)
def test_validate_reports_position_and_reason(template, position, reason):
    with pytest.raises(TemplateSyntaxError) as excinfo:
        validate(template)

    assert excinfo.value.position == position
    assert excinfo.value.reason == reason
    assert not is_valid(template)


def test_render_rejects_malformed_templates():
    with pytest.raises(TemplateSyntaxError):
        render("{{#highlights}}", make_document())


def test_valid_templates_pass():
    validate(DEFAULT_TEMPLATE)
    assert is_valid("plain text without tags")
    assert is_valid("{{#tags}}{{#highlights}}{{text}}{{/highlights}}{{/tags}}")


def test_display_name_strips_the_account_prefix():
    assert display_name("acct:reader@hypothes.is") == "reader"
    assert display_name("someone") == "someone"
