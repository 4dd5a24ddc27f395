import logging
from dataclasses import dataclass, field

from formrunner.errors import InvalidUrlError, NoFieldsError
from formrunner.forms.html import extract_meta, extract_title
from formrunner.forms.payload import (
    LAYOUT_VERSION,
    find_field_items,
    find_load_data,
    find_payload_title,
    parse_fields,
)
from formrunner.forms.urls import parse_form_url
from formrunner.models.target import FieldSpec, FormMeta

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Untitled Form"


@dataclass
class ParsedForm:
    external_id: str
    kind: str
    title: str
    fields: list[FieldSpec] = field(default_factory=list)
    meta: FormMeta = field(default_factory=FormMeta)
    raw_payload: list | None = None

    def snapshot(self) -> dict:
        """Opaque copy of the extraction kept on the target for diffing."""
        return {
            "layout_version": LAYOUT_VERSION,
            "title": self.title,
            "entry_ids": [spec.entry_id for spec in self.fields],
            "payload": self.raw_payload,
        }


def extract_form(html: str, source_url: str) -> ParsedForm:
    """
    Parse a form page into its title, field list and transport tokens.

    Raises InvalidUrlError for an unrecognized URL, MissingPayloadError when the
    embedded payload is absent or undecodable, and NoFieldsError when no array
    in the payload looks like a field list. A payload whose field items all lack
    entry ids yields zero fields; callers decide whether that is usable.
    """
    form_info = parse_form_url(source_url)
    if form_info is None:
        raise InvalidUrlError(f"Invalid form URL: {source_url}")
    external_id, kind = form_info

    data = find_load_data(html)
    items = find_field_items(data)
    if items is None:
        raise NoFieldsError("No field entries found in form payload.")

    fields = parse_fields(items)
    title = extract_title(html) or find_payload_title(data) or DEFAULT_TITLE

    logger.debug(
        "[extract] parsed | external_id=%s | kind=%s | fields=%d", external_id, kind, len(fields)
    )
    return ParsedForm(
        external_id=external_id,
        kind=kind,
        title=title,
        fields=fields,
        meta=extract_meta(html, source_url),
        raw_payload=data,
    )
