import re

FORMS_BASE_URL = "https://docs.google.com/forms"
FORMS_ORIGIN = "https://docs.google.com"

_KEYED_RE = re.compile(r"/d/e/([a-zA-Z0-9_-]+)")
_DOCUMENT_RE = re.compile(r"/d/([a-zA-Z0-9_-]+)")


def parse_form_url(url: str) -> tuple[str, str] | None:
    """
    Return (external_id, kind) for a recognized form URL, or None.
    Keyed URLs (``/d/e/<id>``) are kind "e", document URLs (``/d/<id>``) kind "d".
    """
    match = _KEYED_RE.search(url)
    if match:
        return match.group(1), "e"
    match = _DOCUMENT_RE.search(url)
    if match:
        return match.group(1), "d"
    return None


def _base(external_id: str, kind: str) -> str:
    if kind == "e":
        return f"{FORMS_BASE_URL}/d/e/{external_id}"
    return f"{FORMS_BASE_URL}/d/{external_id}"


def build_view_url(external_id: str, kind: str) -> str:
    return f"{_base(external_id, kind)}/viewform"


def build_response_url(external_id: str, kind: str) -> str:
    return f"{_base(external_id, kind)}/formResponse"
