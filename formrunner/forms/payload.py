"""
Accessors for the positional load-data payload embedded in a form page.

The payload is a nested JSON array with no keys. Every "magic index" the
parser relies on is listed once in the layout table below; when the target
format drifts only this table should need updating. Accessors never raise on
a short array or a wrong type: they return None and the caller decides
whether the gap is fatal.
"""
import json
import math
import re
from typing import Any

from formrunner.errors import MalformedPayloadError, MissingPayloadError
from formrunner.forms.html import normalize_text
from formrunner.models.target import FieldSpec

LAYOUT_VERSION = 1

LOAD_DATA_MARKER = re.compile(r"FB_PUBLIC_LOAD_DATA_\s*=\s*")

# One field item: [item_id, label, help_text, type_code, [[entry_id, choices, required, _, validation]]]
ITEM_ID = (0,)
ITEM_LABEL = (1,)
ITEM_HELP = (2,)
ITEM_TYPE = (3,)
ITEM_ENTRIES = (4,)
ENTRY_ID = (4, 0, 0)
ENTRY_CHOICES = (4, 0, 1)
ENTRY_REQUIRED = (4, 0, 2)
ENTRY_VALIDATION = (4, 0, 4)

# Where the form's own title may live in the top-level payload, in order of preference.
PAYLOAD_TITLE_PATHS = ((1, 8), (3,))

FIELD_TYPE_CODES = {
    0: "short",
    1: "paragraph",
    2: "single_choice",
    3: "dropdown",
    4: "multi_choice",
    5: "linear_scale",
    9: "date",
    10: "time",
}

DEFAULT_LABEL = "Untitled"
# wider numeric ranges are not treated as a scale
MAX_SCALE_VALUES = 100


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def get_path(node: Any, path: tuple[int, ...]) -> Any:
    current = node
    for index in path:
        if not isinstance(current, list) or not 0 <= index < len(current):
            return None
        current = current[index]
    return current


def get_str(node: Any, path: tuple[int, ...]) -> str | None:
    value = get_path(node, path)
    return value if isinstance(value, str) else None


def get_number(node: Any, path: tuple[int, ...]) -> int | float | None:
    value = get_path(node, path)
    return value if _is_number(value) else None


def require_list(node: Any, what: str) -> list:
    if not isinstance(node, list):
        raise MalformedPayloadError(f"Expected an array for {what}, got {type(node).__name__}.")
    return node


def find_load_data(html: str) -> list:
    """Locate and decode the embedded load-data array."""
    match = LOAD_DATA_MARKER.search(html)
    if not match:
        raise MissingPayloadError("Could not extract form metadata.")
    try:
        data, _ = json.JSONDecoder().raw_decode(html, match.end())
    except ValueError as exc:
        raise MissingPayloadError(f"Could not extract form metadata: {exc}") from exc
    if not isinstance(data, list):
        raise MissingPayloadError("Could not extract form metadata: payload is not an array.")
    return data


def _looks_like_item(node: Any) -> bool:
    return isinstance(get_str(node, ITEM_LABEL), str) and isinstance(
        get_path(node, ITEM_ENTRIES), list
    )


def find_field_items(node: Any) -> list | None:
    """Depth-first search for the first array holding field descriptors."""
    if not isinstance(node, list):
        return None
    if node and any(_looks_like_item(item) for item in node):
        return node
    for child in node:
        found = find_field_items(child)
        if found is not None:
            return found
    return None


def find_payload_title(data: list) -> str:
    for path in PAYLOAD_TITLE_PATHS:
        value = get_str(data, path)
        if value and value.strip():
            return normalize_text(value)
    return ""


def _options_from_choices(choices: Any) -> list[str] | None:
    if not isinstance(choices, list):
        return None

    # numeric scale encoded as [low, high, ...]
    if len(choices) >= 2 and _is_number(choices[0]) and _is_number(choices[1]):
        low, high = choices[0], choices[1]
        if math.isfinite(low) and math.isfinite(high):
            start, end = int(min(low, high)), int(max(low, high))
            if end - start < MAX_SCALE_VALUES:
                return [str(value) for value in range(start, end + 1)]

    if choices and isinstance(choices[0], list):
        options = [
            normalize_text(entry[0])
            for entry in choices
            if isinstance(entry, list) and entry and isinstance(entry[0], str)
        ]
        options = [option for option in options if option]
        if options:
            return options

    if all(isinstance(value, str) for value in choices):
        options = [normalize_text(value) for value in choices]
        return options or None

    return None


def _is_choice_entry(node: Any) -> bool:
    return isinstance(node, list) and len(node) > 0 and isinstance(node[0], str)


def _collect_choice_lists(node: Any, found: list[list]) -> None:
    if not isinstance(node, list):
        return
    if node and all(_is_choice_entry(entry) for entry in node):
        found.append(node)
        return
    for child in node:
        _collect_choice_lists(child, found)


def extract_options(item: list) -> list[str] | None:
    options = _options_from_choices(get_path(item, ENTRY_CHOICES))
    if options:
        return options

    candidates: list[list] = []
    _collect_choice_lists(item, candidates)
    for candidate in sorted(candidates, key=len, reverse=True):
        options = _options_from_choices(candidate)
        if options:
            return options
    return None


def extract_validation_message(validation: Any) -> str | None:
    if isinstance(validation, str):
        return validation
    if isinstance(validation, list):
        for entry in validation:
            message = extract_validation_message(entry)
            if message:
                return message
    return None


def parse_field(item: Any) -> FieldSpec | None:
    """Turn one positional item into a FieldSpec. Items without an entry id are dropped."""
    if not isinstance(item, list):
        return None

    entry_id = get_path(item, ENTRY_ID)
    if not entry_id or isinstance(entry_id, (bool, list, dict)):
        return None

    label = normalize_text(get_str(item, ITEM_LABEL) or DEFAULT_LABEL) or DEFAULT_LABEL
    type_code = get_number(item, ITEM_TYPE)
    field_type = FIELD_TYPE_CODES.get(type_code, "unsupported") if type_code is not None else "unsupported"
    raw_help = get_str(item, ITEM_HELP)
    help_text = normalize_text(raw_help) if raw_help else None
    validation = get_path(item, ENTRY_VALIDATION)
    item_id = get_path(item, ITEM_ID)

    return FieldSpec(
        entry_id=str(entry_id),
        label=label,
        type=field_type,
        options=extract_options(item),
        required=bool(get_path(item, ENTRY_REQUIRED)),
        help_text=help_text or None,
        validation=(
            {"raw": validation, "message": extract_validation_message(validation)}
            if validation
            else None
        ),
        raw_type=int(type_code) if type_code is not None else None,
        item_id=str(item_id) if item_id is not None else str(entry_id),
    )


def parse_fields(items: Any) -> list[FieldSpec]:
    fields = []
    for item in require_list(items, "field items"):
        spec = parse_field(item)
        if spec is None:
            continue
        spec.position = len(fields)
        fields.append(spec)
    return fields
