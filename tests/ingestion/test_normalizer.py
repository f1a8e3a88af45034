"""Tests for the content normalizer."""

from __future__ import annotations

import base64

import pytest

from crm_inbound.ingestion.models import Channel
from crm_inbound.ingestion.normalizer import (
    NO_CONTENT_SENTINEL,
    ContentNormalizer,
    collapse_whitespace,
    content_hash,
    decode_html_entities,
    decode_quoted_printable,
    trim_to_reply,
)


@pytest.fixture
def normalizer() -> ContentNormalizer:
    return ContentNormalizer()


def test_quoted_reply_is_truncated(normalizer):
    raw = "Hello, yes please book me in.\n\nOn Tue, Jan 1 wrote:\n> original text"
    result = normalizer.normalize(raw, channel=Channel.EMAIL)
    assert result.body == "Hello, yes please book me in."


@pytest.mark.parametrize("raw", ["", "   \n\t  ", b"", b"\r\n\r\n"])
@pytest.mark.parametrize("channel", [Channel.EMAIL, Channel.SMS])
def test_empty_input_yields_sentinel(normalizer, raw, channel):
    result = normalizer.normalize(raw, channel=channel)
    assert result.body == NO_CONTENT_SENTINEL
    assert result.is_sentinel


def test_too_short_body_yields_sentinel(normalizer):
    assert normalizer.normalize("ok", channel=Channel.SMS).body == NO_CONTENT_SENTINEL


def test_plain_text_round_trip(normalizer):
    raw = "Hi there,\nI can do Thursday at 3pm.\n\nSee you then"
    assert normalizer.normalize(raw, channel=Channel.EMAIL).body == raw


def test_plain_text_round_trip_collapses_whitespace(normalizer):
    raw = "  Hi   there,\t\nI can do Thursday at 3pm.   \n"
    assert normalizer.normalize(raw, channel=Channel.EMAIL).body == "Hi there,\nI can do Thursday at 3pm."


@pytest.mark.parametrize(
    "raw",
    [
        "Hi, my new contact is Jo Smith <jo.smith@example.com> thanks",
        "Anything between <100 and >50 guests works for us",
        "Subject: the Friday party\nDate: any day after the 5th is fine",
    ],
)
def test_plain_text_with_angle_brackets_and_colons_round_trips(normalizer, raw):
    assert normalizer.normalize(raw, channel=Channel.EMAIL).body == raw


def test_plain_mime_part_keeps_addresses(normalizer, make_email):
    body = "Please copy in my assistant <a.helper@example.com> on the confirmation"
    assert normalizer.normalize(make_email(body=body), channel=Channel.EMAIL).body == body


def test_stray_markup_in_raw_text_is_removed(normalizer):
    raw = "Yes <b>Thursday</b> is <i>fine</i> for us"
    assert normalizer.normalize(raw, channel=Channel.EMAIL).body == "Yes Thursday is fine for us"


def test_multipart_prefers_plain_part(normalizer, make_email):
    raw = make_email(
        body="Plain reply wins here.",
        html="<html><body><p>HTML reply loses</p></body></html>",
    )
    result = normalizer.normalize(raw, channel=Channel.EMAIL)
    assert result.body == "Plain reply wins here."
    assert result.subject == "Re: Your booking"
    assert result.method == "plain_text"


def test_html_only_message_is_converted(normalizer):
    html = (
        "<html><head><style>p {color: red}</style></head><body>"
        "<p>Hi Jane</p><script>alert('x')</script>"
        '<p>Click <a href="https://example.com/book">Book now</a></p>'
        "</body></html>"
    )
    raw = (
        "From: Jane <jane.doe@example.com>\r\n"
        "Subject: Booking\r\n"
        "Content-Type: text/html; charset=utf-8\r\n"
        "\r\n" + html
    ).encode("utf-8")
    result = normalizer.normalize(raw, channel=Channel.EMAIL)
    assert "Hi Jane" in result.body
    assert "Book now (https://example.com/book)" in result.body
    assert "alert" not in result.body
    assert "color" not in result.body
    assert "<" not in result.body
    assert result.method == "html_conversion"


def test_flat_html_uses_content_type_hint(normalizer):
    result = normalizer.normalize(
        "<div>Thursday works for me</div>", channel=Channel.EMAIL, content_type="text/html"
    )
    assert result.body == "Thursday works for me"


def test_html_fallback_when_converter_fails(normalizer, monkeypatch):
    def _boom(_html):
        raise RuntimeError("converter broke")

    monkeypatch.setattr(normalizer.html_converter, "handle", _boom)
    text = normalizer.html_to_text('<p>Line one</p><p>See <a href="https://x.test">this</a> &amp; more</p>')
    assert "Line one" in text
    assert "this (https://x.test) & more" in text


def test_quoted_printable_is_decoded():
    assert decode_quoted_printable("Caf=C3=A9 tomorrow =\nworks") == "Café tomorrow works"


def test_plain_equals_signs_are_untouched():
    assert decode_quoted_printable("use id=12 and x=ab") == "use id=12 and x=ab"


def test_html_entities_and_mojibake_are_decoded():
    raw = "Tom &amp; Jerry&#39;s &ldquo;quote&rdquo; donâ€™t &#x41;"
    assert decode_html_entities(raw) == "Tom & Jerry's \"quote\" don't A"


def test_marker_before_content_is_skipped():
    assert trim_to_reply("> quoted old line\nActual reply here please") == "Actual reply here please"


def test_outlook_header_block_stops_collection(normalizer):
    raw = (
        "Sounds good to me\n\n"
        "From: Bookings <bookings@ourcrm.test>\n"
        "Sent: Monday, 1 January 2030 10:00\n"
        "To: Jane Doe\n"
        "Subject: Your booking\n\n"
        "Old message body"
    )
    assert normalizer.normalize(raw, channel=Channel.EMAIL).body == "Sounds good to me"


def test_original_message_separator_stops_collection(normalizer):
    raw = "Confirmed for Friday\n-----Original Message-----\nPrevious text"
    assert normalizer.normalize(raw, channel=Channel.EMAIL).body == "Confirmed for Friday"


@pytest.mark.parametrize(
    "signature",
    ["Kind regards,\nJane", "Sent from my iPhone", "Thanks\nJane", "--\nJane Doe\n0770 000"],
)
def test_signature_stops_collection(normalizer, signature):
    raw = f"See you at 10am tomorrow\n{signature}"
    assert normalizer.normalize(raw, channel=Channel.EMAIL).body == "See you at 10am tomorrow"


def test_mime_artifacts_are_removed(normalizer):
    raw = (
        "Yes that time is fine\n"
        "boundary=\"000000abc\"\n"
        "X-Mailer: Something\n"
    )
    assert normalizer.normalize(raw, channel=Channel.EMAIL).body == "Yes that time is fine"


def test_standalone_base64_payload_is_decoded(normalizer):
    text = "Yes I would like to book the appointment for next week please"
    encoded = base64.b64encode(text.encode("utf-8")).decode("ascii")
    assert normalizer.normalize(encoded, channel=Channel.EMAIL).body == text


def test_excess_blank_lines_are_collapsed():
    assert collapse_whitespace("Line one\n\n\n\n\n\nLine two") == "Line one\n\n\nLine two"


def test_sms_keeps_quote_like_lines(normalizer):
    result = normalizer.normalize("> 5 people &amp; a dog\nOn Tue we wrote: hi", channel=Channel.SMS)
    assert result.body == "> 5 people & a dog\nOn Tue we wrote: hi"
    assert result.subject is None


def test_content_hash_ignores_case_and_spacing():
    assert content_hash("Hello  World\n") == content_hash("hello world")
    assert content_hash("Hello World") != content_hash("Hello Word")
