import html as html_lib
import re

from formrunner.models.target import FormMeta

PLACEHOLDER_TITLE = "google forms"

_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")
_TITLE_PATTERNS = (
    re.compile(r"<title[^>]*>([^<]+)</title>", re.IGNORECASE),
    re.compile(r"property=[\"']og:title[\"']\s+content=[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"itemprop=[\"']name[\"']\s+content=[\"']([^\"']+)[\"']", re.IGNORECASE),
)
_HIDDEN_INPUT_RE = re.compile(r"<input[^>]*type=['\"]hidden['\"][^>]*>", re.IGNORECASE)
_NAME_ATTR_RE = re.compile(r"name=['\"]([^'\"]+)['\"]", re.IGNORECASE)
_VALUE_ATTR_RE = re.compile(r"value=['\"]([^'\"]*)['\"]", re.IGNORECASE)
_FORM_ACTION_RE = re.compile(r"<form[^>]*action=['\"]([^'\"]+)['\"]", re.IGNORECASE)

# FormMeta attribute -> hidden input name on the target page
TOKEN_NAMES = {
    "token": "token",
    "tag": "tag",
    "partial_response": "partialResponse",
    "fbzx": "fbzx",
    "fvv": "fvv",
    "page_history": "pageHistory",
    "submission_timestamp": "submissionTimestamp",
    "dlut": "dlut",
    "hud": "hud",
}


def decode_html(value: str) -> str:
    return html_lib.unescape(value)


def strip_tags(value: str) -> str:
    return _TAG_RE.sub("", value)


def normalize_text(value: str) -> str:
    """Decode entities, drop tags and collapse whitespace."""
    return _SPACE_RE.sub(" ", strip_tags(decode_html(value))).strip()


def extract_title(html: str) -> str:
    """
    First informative title among <title>, og:title and itemprop="name".
    The generic "Google Forms" placeholder is skipped. Returns "" if none.
    """
    for pattern in _TITLE_PATTERNS:
        match = pattern.search(html)
        if not match:
            continue
        title = normalize_text(match.group(1))
        if title and title.lower() != PLACEHOLDER_TITLE:
            return title
    return ""


def extract_hidden_inputs(html: str) -> dict[str, str]:
    inputs: dict[str, str] = {}
    for match in _HIDDEN_INPUT_RE.finditer(html):
        tag = match.group(0)
        name = _NAME_ATTR_RE.search(tag)
        if not name:
            continue
        value = _VALUE_ATTR_RE.search(tag)
        inputs[name.group(1)] = decode_html(value.group(1) if value else "")
    return inputs


def extract_named_value(html: str, name: str) -> str:
    match = re.search(
        rf"name=['\"]{re.escape(name)}['\"]\s+value=['\"]([^'\"]+)['\"]", html, re.IGNORECASE
    )
    return decode_html(match.group(1)) if match else ""


def extract_form_action(html: str) -> str:
    match = _FORM_ACTION_RE.search(html)
    return decode_html(match.group(1)) if match else ""


def extract_meta(html: str, url: str) -> FormMeta:
    hidden = extract_hidden_inputs(html)
    tokens = {
        attr: hidden.get(name) or extract_named_value(html, name)
        for attr, name in TOKEN_NAMES.items()
    }
    return FormMeta(**tokens, action_url=extract_form_action(html), view_url=url)
