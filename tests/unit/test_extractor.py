import json

import pytest

from formrunner.errors import InvalidUrlError, MissingPayloadError, NoFieldsError
from formrunner.forms.extractor import extract_form
from formrunner.forms.html import extract_title, normalize_text
from formrunner.forms.payload import extract_options, find_field_items, get_path, parse_field
from formrunner.forms.urls import build_response_url, build_view_url, parse_form_url

FORM_ID = "1FAIpQLSdT3stF0rm"
VIEW_URL = f"https://docs.google.com/forms/d/e/{FORM_ID}/viewform"


def _page(payload, title="Survey"):
    return f"<html><head><title>{title}</title></head><script>var FB_PUBLIC_LOAD_DATA_ = {payload};</script></html>"


# url parsing
def test_parse_keyed_url():
    assert parse_form_url(VIEW_URL) == (FORM_ID, "e")


def test_parse_document_url():
    assert parse_form_url("https://docs.google.com/forms/d/abc_DEF-123/edit") == ("abc_DEF-123", "d")


def test_parse_unrelated_url():
    assert parse_form_url("https://example.com/survey") is None


def test_build_urls_by_kind():
    assert build_view_url("abc", "d") == "https://docs.google.com/forms/d/abc/viewform"
    assert build_response_url("abc", "e") == "https://docs.google.com/forms/d/e/abc/formResponse"


# full extraction
def test_extract_sample_form(form_html):
    parsed = extract_form(form_html(), VIEW_URL)

    assert parsed.external_id == FORM_ID
    assert parsed.kind == "e"
    assert parsed.title == "Customer Survey"
    assert [spec.entry_id for spec in parsed.fields] == ["1001", "1002", "1003", "1004", "1006"]
    assert [spec.position for spec in parsed.fields] == [0, 1, 2, 3, 4]
    assert [spec.type for spec in parsed.fields] == [
        "short", "short", "single_choice", "multi_choice", "paragraph",
    ]


def test_extract_field_details(form_html):
    fields = {spec.entry_id: spec for spec in extract_form(form_html(), VIEW_URL).fields}

    email = fields["1002"]
    assert email.label == "Email"
    assert email.required is True
    assert email.help_text == "We never share it"
    assert email.validation_message == "Must be a valid email"
    assert email.raw_type == 0
    assert email.item_id == "112"
    assert fields["1003"].options == ["Red", "Green", "Blue"]
    assert fields["1003"].required is False
    assert fields["1001"].options is None
    assert fields["1001"].strategy == "random"
    assert fields["1001"].enabled is True


def test_extract_meta_tokens(form_html):
    meta = extract_form(form_html(), VIEW_URL).meta
    assert meta.fvv == "1"
    assert meta.fbzx == "-4785329163"
    assert meta.page_history == "0"
    assert meta.partial_response == '[null,null,"-4785329163"]'
    assert meta.action_url.endswith(f"/d/e/{FORM_ID}/formResponse")
    assert meta.view_url == VIEW_URL
    assert meta.has_submission_tokens


def test_extract_snapshot_keeps_payload(form_html):
    parsed = extract_form(form_html(), VIEW_URL)
    snapshot = parsed.snapshot()
    assert snapshot["entry_ids"] == ["1001", "1002", "1003", "1004", "1006"]
    assert snapshot["payload"] == parsed.raw_payload


# title fallbacks
def test_title_skips_placeholder_for_og_title():
    html = (
        "<title>Google Forms</title>"
        '<meta property="og:title" content="Event &amp; RSVP">'
    )
    assert extract_title(html) == "Event & RSVP"


def test_title_falls_back_to_payload(form_html):
    parsed = extract_form(form_html(title="Payload Title", page_title="Google Forms"), VIEW_URL)
    assert parsed.title == "Payload Title"


def test_title_defaults_to_untitled(sample_items):
    payload = json.dumps([None, [None, sample_items]])
    parsed = extract_form(_page(payload, title="Google Forms"), VIEW_URL)
    assert parsed.title == "Untitled Form"


# failures
def test_invalid_url_rejected(form_html):
    with pytest.raises(InvalidUrlError):
        extract_form(form_html(), "https://example.com/form")


def test_missing_payload():
    with pytest.raises(MissingPayloadError):
        extract_form("<html><title>x</title></html>", VIEW_URL)


def test_undecodable_payload():
    with pytest.raises(MissingPayloadError):
        extract_form(_page("[1, 2, {oops"), VIEW_URL)


def test_payload_without_field_items():
    with pytest.raises(NoFieldsError):
        extract_form(_page(json.dumps([None, [1, 2, 3], "x"])), VIEW_URL)


def test_items_without_entry_ids_yield_zero_fields():
    payload = json.dumps([None, [None, [[1, "Header", None, 8, []]]]])
    assert extract_form(_page(payload), VIEW_URL).fields == []


# item level
def test_missing_label_becomes_untitled():
    spec = parse_field([5, None, None, 0, [[77, None, 0]]])
    assert spec.label == "Untitled"
    assert spec.entry_id == "77"


def test_unknown_type_code_is_unsupported():
    spec = parse_field([5, "Upload", None, 13, [[78, None, 0]]])
    assert spec.type == "unsupported"
    assert spec.raw_type == 13


def test_label_markup_is_normalized():
    spec = parse_field([5, "  <b>Your</b>\n  name&#39;s  ", None, 0, [[79, None, 0]]])
    assert spec.label == "Your name's"


def test_numeric_scale_range():
    assert extract_options([1, "Rate", None, 5, [[80, [1, 5], 1]]]) == ["1", "2", "3", "4", "5"]


def test_oversized_numeric_range_is_not_expanded():
    assert extract_options([1, "Rate", None, 5, [[83, [0, 1_000_000_000], 1]]]) is None


def test_oversized_numeric_range_falls_through_to_choice_lists():
    item = [1, "Rate", None, 5, [[84, [0, 1_000_000_000], 1, [["low"], ["high"]]]]]
    assert extract_options(item) == ["low", "high"]


def test_flat_string_choices():
    assert extract_options([1, "Pick", None, 3, [[81, ["a", " b "], 0]]]) == ["a", "b"]


def test_longest_choice_list_fallback():
    item = [1, "Pick", None, 2, [[82, None, 0, [[["x"]], [["one"], ["two"], ["three"]]]]]]
    assert extract_options(item) == ["one", "two", "three"]


def test_find_field_items_with_mixed_items():
    items = [[1, "Heading", None, 6, None], [2, "Name", None, 0, [[90, None, 0]]]]
    assert find_field_items([None, [None, items]]) is items


def test_get_path_out_of_range():
    assert get_path([1, [2]], (1, 5)) is None
    assert get_path([1, "text"], (1, 0)) is None


def test_normalize_text():
    assert normalize_text("a &amp;\n\t <i>b</i>") == "a & b"
