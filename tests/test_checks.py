from __future__ import annotations

import json

from editcrew.orchestration.checks import (
    SEVERITY_ERROR,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    check_image_alt,
    check_schema_settings,
    merged_file_map,
    validate_change_set,
)
from editcrew.orchestration.types import CodeChange, FileContext

SECTION = """<div class="hero">{{ section.settings.heading }}</div>
{% schema %}
{"name": "Hero", "settings": [{"id": "heading", "type": "text"}]}
{% endschema %}"""


def _file(path: str, content: str) -> FileContext:
    return FileContext(file_id=path, file_name=path, file_type=path.rsplit(".", 1)[-1], content=content)


def _change(path: str, original: str, proposed: str) -> CodeChange:
    return CodeChange(file_id=path, file_name=path, original_content=original, proposed_content=proposed)


def _categories(issues):
    return [(issue.severity, issue.category) for issue in issues]


def test_clean_change_has_no_issues():
    files = [_file("sections/hero.liquid", SECTION), _file("snippets/icon.liquid", "<svg></svg>")]
    proposed = SECTION.replace("</div>", "{% render 'icon' %}</div>")

    assert validate_change_set([_change("sections/hero.liquid", SECTION, proposed)], files) == []


def test_introduced_problems_are_reported():
    files = [_file("sections/hero.liquid", SECTION), _file("config/settings_data.json", "{}")]
    broken_section = SECTION.replace(
        "</div>",
        "{% render 'missing-icon' %}{{ section.settings.subheading }}"
        "<img src=\"{{ 'logo.png' | asset_url }}\">{% include 'legacy' %}</div>",
    )
    changes = [
        _change("sections/hero.liquid", SECTION, broken_section),
        _change("config/settings_data.json", "{}", '{"current": '),
    ]

    issues = validate_change_set(changes, files)

    assert (SEVERITY_ERROR, "json_syntax") in _categories(issues)
    assert (SEVERITY_ERROR, "snippet_reference") in _categories(issues)
    assert (SEVERITY_WARNING, "schema_setting") in _categories(issues)
    assert (SEVERITY_WARNING, "asset_reference") in _categories(issues)
    assert (SEVERITY_WARNING, "accessibility") in _categories(issues)
    assert (SEVERITY_INFO, "deprecated_liquid") in _categories(issues)
    snippet_issues = [issue for issue in issues if issue.category == "snippet_reference"]
    assert {issue.description for issue in snippet_issues} == {
        'Snippet reference "snippets/missing-icon.liquid" not found in project',
        'Snippet reference "snippets/legacy.liquid" not found in project',
    }


def test_preexisting_issues_are_not_reported():
    legacy = "{% include 'gone' %}<img src=\"x.png\">"
    files = [_file("sections/legacy.liquid", legacy)]
    change = _change("sections/legacy.liquid", legacy, legacy + "\n<p>new paragraph</p>")

    assert validate_change_set([change], files) == []


def test_template_must_reference_existing_sections():
    template = json.dumps({"sections": {"main": {"type": "main-product"}, "extra": {"type": "promo"}}})
    files = [_file("sections/main-product.liquid", "<div></div>"), _file("templates/product.json", "{}")]

    issues = validate_change_set([_change("templates/product.json", "{}", template)], files)

    assert [issue.description for issue in issues] == [
        'Template references section "sections/promo.liquid" (key "extra") which does not exist'
    ]


def test_new_file_is_checked_in_full():
    files = [_file("locales/en.default.json", json.dumps({"general": {"title": "Shop"}}))]
    new_snippet = "{{ 'general.title' | t }} {{ 'general.missing' | t }}"

    issues = validate_change_set([_change("snippets/title.liquid", "", new_snippet)], files)

    assert [(issue.category, issue.description) for issue in issues] == [
        ("locale_key", 'Translation key "general.missing" not found in locale files')
    ]


def test_merged_file_map_overlays_proposed_content():
    files = [_file("a.css", "old"), _file("b.css", "keep")]
    merged = merged_file_map([_change("./a.css", "old", "new"), _change("c.css", "", "added")], files)
    assert merged == {"a.css": "new", "b.css": "keep", "c.css": "added"}


def test_individual_checks():
    assert check_image_alt("x.liquid", '<img src="a"><IMG alt="b" src="c">', set())[0].description == (
        "1 <img> tag(s) without an alt attribute"
    )
    assert check_schema_settings("x.liquid", "{{ block.settings.anything }}", set()) == []
