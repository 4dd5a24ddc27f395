from collections import defaultdict, deque
from dataclasses import replace

from formrunner.forms.html import normalize_text
from formrunner.models.target import FieldSpec

ANY_TYPE = "*"


def normalize_label(label: str) -> str:
    return normalize_text(label).lower()


def reconcile_fields(stored: list[FieldSpec], fresh: list[FieldSpec]) -> list[FieldSpec]:
    """
    Re-bind stored fields to a freshly extracted field list.

    Each stored field is matched by label+type, then by label alone, then by
    position. The match contributes entry id, label, type, options, required,
    validation, help text and raw type; the stored id and operator
    configuration are kept. A fresh field is handed out at most once.
    Unmatched stored fields pass through unchanged.
    """
    buckets: dict[str, deque[int]] = defaultdict(deque)
    for index, spec in enumerate(fresh):
        label_key = normalize_label(spec.label)
        buckets[f"{label_key}|{spec.type}"].append(index)
        buckets[f"{label_key}|{ANY_TYPE}"].append(index)

    used: set[int] = set()

    def take(key: str) -> int | None:
        queue = buckets.get(key)
        while queue:
            index = queue.popleft()
            if index not in used:
                return index
        return None

    reconciled = []
    for position, spec in enumerate(stored):
        label_key = normalize_label(spec.label)
        index = take(f"{label_key}|{spec.type}")
        if index is None:
            index = take(f"{label_key}|{ANY_TYPE}")
        if index is None and position < len(fresh) and position not in used:
            index = position
        if index is None:
            reconciled.append(spec)
            continue

        used.add(index)
        match = fresh[index]
        reconciled.append(
            replace(
                spec,
                entry_id=match.entry_id,
                label=match.label,
                type=match.type,
                options=match.options,
                required=match.required,
                validation=match.validation,
                help_text=match.help_text if match.help_text is not None else spec.help_text,
                raw_type=match.raw_type if match.raw_type is not None else spec.raw_type,
                item_id=match.item_id or spec.item_id,
            )
        )
    return reconciled
