"""Default content normalizer: YAML front matter for Hexo posts.

A post is normalized when its front matter carries every required field and
(optionally) a publication date. Documents that already satisfy this are
returned byte-for-byte unchanged, so normalizing twice never rewrites a file.
"""

import datetime
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

FRONT_MATTER_RE = re.compile(
    r"\A---[ \t]*\r?\n(?:(.*?)\r?\n)?---[ \t]*(?:\r?\n|\Z)", re.DOTALL
)

LIST_FIELDS = ("tags", "categories")


@dataclass(frozen=True)
class NormalizeOptions:
    """Front matter rules.

    Attributes:
        auto_add_date (bool): Insert a `date` field when missing.
        date_format (str): `strftime` format for inserted dates.
        required_fields (tuple[str, ...]): Fields that must be present.
        validate (bool): Report type errors in known fields.
    """

    auto_add_date: bool = True
    date_format: str = "%Y-%m-%d %H:%M:%S"
    required_fields: tuple[str, ...] = ("title",)
    validate: bool = True


@dataclass(frozen=True)
class NormalizationResult:
    content: str
    modified: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class _NoWrapDumper(yaml.SafeDumper):
    """Keeps long titles on one line."""


def split_front_matter(text: str) -> tuple[str | None, str]:
    """Separates the raw front matter block from the body.

    Returns:
        tuple[str | None, str]: The YAML text (None when absent) and the body.
    """
    match = FRONT_MATTER_RE.match(text)
    if not match:
        return None, text
    return match.group(1) or "", text[match.end() :]


def _default_for(name: str, file_path: str) -> Any:
    if name == "title":
        return Path(file_path).stem
    if name in LIST_FIELDS:
        return []
    return ""


def _dump(data: dict[str, Any]) -> str:
    return yaml.dump(
        data,
        Dumper=_NoWrapDumper,
        allow_unicode=True,
        default_flow_style=False,
        sort_keys=False,
        width=999999,
    )


def normalize_front_matter(
    raw: str,
    file_path: str,
    options: NormalizeOptions | None = None,
    now: datetime.datetime | None = None,
) -> NormalizationResult:
    """Ensures a document carries complete front matter.

    Args:
        raw (str): The document text.
        file_path (str): The document path, used for the default title.
        options (NormalizeOptions | None): The rules to apply.
        now (datetime.datetime | None): Timestamp for inserted dates.

    Returns:
        NormalizationResult: The (possibly) rewritten document and diagnostics.
    """
    options = options or NormalizeOptions()
    errors: list[str] = []
    warnings: list[str] = []

    yaml_text, body = split_front_matter(raw)
    data: Any = {}
    if yaml_text is not None:
        try:
            data = yaml.safe_load(yaml_text) or {}
        except yaml.YAMLError as e:
            return NormalizationResult(raw, False, [f"Malformed front matter: {e}"])
        if not isinstance(data, dict):
            return NormalizationResult(raw, False, ["Front matter must be a mapping"])

    additions: dict[str, Any] = {}
    if options.auto_add_date and not data.get("date"):
        stamp = now or datetime.datetime.now()
        additions["date"] = stamp.strftime(options.date_format)
    for name in options.required_fields:
        if name not in data or data[name] in (None, ""):
            additions[name] = _default_for(name, file_path)
            warnings.append(f"Added missing field '{name}'")

    if options.validate:
        for name in LIST_FIELDS:
            value = data.get(name)
            if value is not None and not isinstance(value, list):
                errors.append(f"Field '{name}' must be a list")

    if errors:
        return NormalizationResult(raw, False, errors, warnings)
    if not additions:
        return NormalizationResult(raw, False, [], warnings)

    merged = {**data, **additions}
    if not body.startswith("\n") and yaml_text is None and body:
        body = "\n" + body
    content = f"---\n{_dump(merged)}---\n{body}"
    return NormalizationResult(content, content != raw, [], warnings)
