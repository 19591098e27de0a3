"""
Deterministic cross-file consistency checks for a proposed change set.

Checks run on the merged file map (project files overlaid with proposed
content). Only regressions are reported: an issue already present when the
changed files hold their original content is dropped.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable

from .types import CodeChange, FileContext

SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"
SEVERITY_INFO = "info"

SOURCE_PROGRAMMATIC = "programmatic"
SOURCE_LLM = "llm"

RENDER_RE = re.compile(r"\{%-?\s*(?:render|include)\s+['\"]([^'\"]+)['\"]")
INCLUDE_RE = re.compile(r"\{%-?\s*include\s+['\"]")
IMG_URL_RE = re.compile(r"\|\s*img_url\b")
SCHEMA_RE = re.compile(r"\{%-?\s*schema\s*-?%\}(.*?)\{%-?\s*endschema\s*-?%\}", re.DOTALL)
SETTING_REF_RE = re.compile(r"\b(section|block)\.settings\.(\w+)")
ASSET_RE = re.compile(r"\{\{-?\s*['\"]([^'\"]+)['\"]\s*\|\s*asset_(?:img_)?url")
IMG_TAG_RE = re.compile(r"<img\b[^>]*>", re.IGNORECASE)
ALT_ATTR_RE = re.compile(r"\balt\s*=", re.IGNORECASE)
TRANSLATION_RE = re.compile(r"['\"]([a-zA-Z0-9_.-]+)['\"]\s*\|\s*t\b")


@dataclass(frozen=True)
class ReviewIssue:
    severity: str
    file: str
    description: str
    category: str
    source: str = SOURCE_PROGRAMMATIC

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.severity, self.category, self.file, self.description)

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity,
            "file": self.file,
            "description": self.description,
            "category": self.category,
            "source": self.source,
        }


def normalize_path(path: str) -> str:
    cleaned = str(path or "").replace("\\", "/")
    return cleaned[2:] if cleaned.startswith("./") else cleaned.lstrip("/")


def merged_file_map(changes: list[CodeChange], files: list[FileContext]) -> dict[str, str]:
    proposed = {normalize_path(change.file_name): change.proposed_content for change in changes}
    merged: dict[str, str] = {}
    for item in files:
        key = normalize_path(item.path or item.file_name)
        name = normalize_path(item.file_name)
        merged[key] = proposed.get(key, proposed.get(name, item.content))
    for name, content in proposed.items():
        merged.setdefault(name, content)
    return merged


def _issue(severity: str, file: str, description: str, category: str) -> ReviewIssue:
    return ReviewIssue(severity=severity, file=file, description=description, category=category)


def _snippet_path(name: str) -> str:
    return f"snippets/{name}" if name.endswith(".liquid") else f"snippets/{name}.liquid"


def _section_path(section_type: str) -> str:
    return f"sections/{section_type}" if section_type.endswith(".liquid") else f"sections/{section_type}.liquid"


def check_json_validity(path: str, content: str, _paths: set[str]) -> list[ReviewIssue]:
    if not path.endswith(".json"):
        return []
    try:
        json.loads(content)
    except json.JSONDecodeError as exc:
        return [_issue(SEVERITY_ERROR, path, f"Invalid JSON: {exc.msg} (line {exc.lineno})", "json_syntax")]
    return []


def check_template_sections(path: str, content: str, paths: set[str]) -> list[ReviewIssue]:
    if "templates/" not in path or not path.endswith(".json"):
        return []
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        return []
    sections = data.get("sections") if isinstance(data, dict) else None
    if not isinstance(sections, dict):
        return []
    issues = []
    for key, section in sections.items():
        section_type = section.get("type") if isinstance(section, dict) else None
        if not section_type:
            continue
        section_path = _section_path(str(section_type))
        if section_path not in paths:
            issues.append(
                _issue(
                    SEVERITY_ERROR,
                    path,
                    f'Template references section "{section_path}" (key "{key}") which does not exist',
                    "template_section",
                )
            )
    return issues


def check_snippet_references(path: str, content: str, paths: set[str]) -> list[ReviewIssue]:
    if not path.endswith(".liquid"):
        return []
    issues = []
    for match in RENDER_RE.finditer(content):
        snippet = _snippet_path(match.group(1))
        if snippet not in paths:
            issues.append(
                _issue(SEVERITY_ERROR, path, f'Snippet reference "{snippet}" not found in project', "snippet_reference")
            )
    return issues


def schema_setting_ids(content: str) -> set[str] | None:
    match = SCHEMA_RE.search(content)
    if match is None:
        return None
    try:
        schema = json.loads(match.group(1).strip())
    except json.JSONDecodeError:
        return None
    if not isinstance(schema, dict):
        return None

    ids: set[str] = set()

    def collect(settings: Any) -> None:
        for item in settings if isinstance(settings, list) else []:
            if isinstance(item, dict) and isinstance(item.get("id"), str):
                ids.add(item["id"])

    collect(schema.get("settings"))
    for block in schema.get("blocks") or []:
        if isinstance(block, dict):
            collect(block.get("settings"))
    return ids


def check_schema_settings(path: str, content: str, _paths: set[str]) -> list[ReviewIssue]:
    if not path.endswith(".liquid"):
        return []
    valid = schema_setting_ids(content)
    if not valid:
        return []
    markup = SCHEMA_RE.sub("", content)
    issues = []
    for scope, setting in SETTING_REF_RE.findall(markup):
        if setting not in valid:
            issues.append(
                _issue(
                    SEVERITY_WARNING,
                    path,
                    f"{scope}.settings.{setting} referenced but not defined in {{% schema %}}",
                    "schema_setting",
                )
            )
    return issues


def check_asset_references(path: str, content: str, paths: set[str]) -> list[ReviewIssue]:
    if not path.endswith(".liquid"):
        return []
    issues = []
    for match in ASSET_RE.finditer(content):
        name = match.group(1)
        asset = name if name.startswith("assets/") else f"assets/{name}"
        if asset not in paths:
            issues.append(
                _issue(SEVERITY_WARNING, path, f'Asset "{asset}" referenced but not found in project', "asset_reference")
            )
    return issues


def check_image_alt(path: str, content: str, _paths: set[str]) -> list[ReviewIssue]:
    if not path.endswith((".liquid", ".html")):
        return []
    missing = [tag for tag in IMG_TAG_RE.findall(content) if not ALT_ATTR_RE.search(tag)]
    if not missing:
        return []
    return [
        _issue(
            SEVERITY_WARNING,
            path,
            f"{len(missing)} <img> tag(s) without an alt attribute",
            "accessibility",
        )
    ]


def check_deprecated_liquid(path: str, content: str, _paths: set[str]) -> list[ReviewIssue]:
    if not path.endswith(".liquid"):
        return []
    issues = []
    if INCLUDE_RE.search(content):
        issues.append(
            _issue(
                SEVERITY_INFO,
                path,
                "Deprecated Liquid tag `{% include %}` detected; prefer `{% render %}`.",
                "deprecated_liquid",
            )
        )
    if IMG_URL_RE.search(content):
        issues.append(
            _issue(
                SEVERITY_INFO,
                path,
                "Deprecated Liquid filter `img_url` detected; prefer `image_url`.",
                "deprecated_liquid",
            )
        )
    return issues


CHECKS: tuple[Callable[[str, str, set[str]], list[ReviewIssue]], ...] = (
    check_json_validity,
    check_template_sections,
    check_snippet_references,
    check_schema_settings,
    check_asset_references,
    check_image_alt,
    check_deprecated_liquid,
)


def _flatten_keys(value: Any, prefix: str = "") -> list[str]:
    if not isinstance(value, dict):
        return []
    keys = []
    for key, item in value.items():
        current = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(item, dict):
            keys.extend(_flatten_keys(item, current))
        else:
            keys.append(current)
    return keys


def locale_keys(merged: dict[str, str]) -> set[str]:
    keys: set[str] = set()
    for path, content in merged.items():
        if not path.startswith("locales/") or not path.endswith(".json"):
            continue
        try:
            keys.update(_flatten_keys(json.loads(content)))
        except json.JSONDecodeError:
            continue
    return keys


def check_translation_keys(path: str, content: str, keys: set[str]) -> list[ReviewIssue]:
    if not path.endswith(".liquid") or not keys:
        return []
    return [
        _issue(SEVERITY_WARNING, path, f'Translation key "{key}" not found in locale files', "locale_key")
        for key in TRANSLATION_RE.findall(content)
        if key not in keys
    ]


def _run(merged: dict[str, str]) -> list[ReviewIssue]:
    paths = set(merged)
    keys = locale_keys(merged)
    issues: list[ReviewIssue] = []
    for path, content in merged.items():
        for check in CHECKS:
            issues.extend(check(path, content, paths))
        issues.extend(check_translation_keys(path, content, keys))
    return issues


def dedupe(issues: list[ReviewIssue]) -> list[ReviewIssue]:
    seen: set[tuple[str, str, str, str]] = set()
    unique = []
    for issue in issues:
        if issue.key in seen:
            continue
        seen.add(issue.key)
        unique.append(issue)
    return unique


def validate_change_set(changes: list[CodeChange], files: list[FileContext]) -> list[ReviewIssue]:
    """Issues introduced by ``changes``, deduplicated, in file order."""
    after = _run(merged_file_map(changes, files))
    baseline_changes = [
        CodeChange(
            file_id=change.file_id,
            file_name=change.file_name,
            original_content=change.original_content,
            proposed_content=change.original_content,
        )
        for change in changes
        if change.original_content
    ]
    baseline = {issue.key for issue in _run(merged_file_map(baseline_changes, files))}
    return dedupe([issue for issue in after if issue.key not in baseline])
