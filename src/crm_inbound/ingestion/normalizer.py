"""Content normalizer turning raw provider payloads into comparable plain text.

Email payloads are parsed with the standard library ``email`` package
(multipart aware, transfer encodings handled by the parser); HTML-only
messages go through ``html2text``. Whatever comes out is then cleaned in a
fixed order:

1. base64 segments that leaked through are decoded
2. HTML entities (plus common mojibake) are decoded
3. quoted-printable escapes are decoded
4. stray tags are removed
5. the text is trimmed to the correspondent's own reply
6. residual MIME/header lines are dropped
7. whitespace is collapsed

Downstream consumers must never see an empty body, so anything shorter than
``MIN_BODY_LENGTH`` becomes ``NO_CONTENT_SENTINEL``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import re
from dataclasses import dataclass
from email import message_from_bytes
from email.message import EmailMessage as StdEmailMessage
from email.policy import default as email_policy
from typing import List, Optional, Tuple, Union

import html2text

from ..errors import ContentExtractionFailure
from .models import Channel

logger = logging.getLogger(__name__)

NO_CONTENT_SENTINEL = "No content available"
MIN_BODY_LENGTH = 3
# shorter replies trigger the "text before first quote" fallback
MIN_REPLY_LENGTH = 10

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_KNOWN_HEADER = re.compile(
    r"^(From|To|Cc|Subject|Date|Content-Type|MIME-Version|Message-ID|Received|"
    r"Return-Path|Delivered-To|Reply-To|In-Reply-To|References):",
    re.IGNORECASE,
)
_HEADER_LINE = re.compile(r"^[A-Za-z][A-Za-z0-9-]*:")

_SCRIPT_STYLE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_LINK = re.compile(
    r"<a\b[^>]*?href=[\"']([^\"']*)[\"'][^>]*>(.*?)</a\s*>", re.IGNORECASE | re.DOTALL
)
_BLOCK_TAG = re.compile(r"</?(div|p|br|h[1-6]|li|tr|ul|ol|table|blockquote)\b[^>]*>", re.IGNORECASE)
_CELL_END = re.compile(r"</td\s*>", re.IGNORECASE)
_HR_TAG = re.compile(r"<hr\b[^>]*>", re.IGNORECASE)
_ANY_TAG = re.compile(r"<[^>]+>")
# leftover markup in non-HTML paths; addresses like <a.b@c> and "<100" are not tags
_HTML_TAG = re.compile(
    r"</?(?:a|b|i|u|p|br|hr|div|span|font|img|table|tbody|thead|tr|td|th|ul|ol|li|h[1-6]|"
    r"html|head|body|meta|style|script|blockquote|center|strong|em|o:p)(?=[\s/>])[^<>]*>",
    re.IGNORECASE,
)

_BOUNDARY_BASE64 = re.compile(
    r"----[A-Za-z0-9._]+\r?\n([A-Za-z0-9+/=\r\n]+?)\r?\n?----[A-Za-z0-9._]+"
)
_STANDALONE_BASE64 = re.compile(r"^[A-Za-z0-9+/=\s]+$")

_QP_SOFT_BREAK = re.compile(r"=\r?\n")
_QP_RUN = re.compile(r"(?:=[0-9A-Fa-f]{2})+")
_QP_TELLTALE = re.compile(r"=\r?\n|=3D|=20|=09|=[89A-F][0-9A-F]")

_NUMERIC_ENTITY = re.compile(r"&#(\d{1,7});")
_HEX_ENTITY = re.compile(r"&#[xX]([0-9a-fA-F]{1,6});")

# Longest sequences first so prefixes never shadow a full match.
ENTITY_TABLE: Tuple[Tuple[str, str], ...] = (
    ("&nbsp;", " "),
    ("&amp;", "&"),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&apos;", "'"),
    ("&ldquo;", '"'),
    ("&rdquo;", '"'),
    ("&lsquo;", "'"),
    ("&rsquo;", "'"),
    ("&mdash;", "-"),
    ("&ndash;", "-"),
    ("&hellip;", "..."),
    # UTF-8 read as cp1252
    ("â€™", "'"),
    ("â€˜", "'"),
    ("â€œ", '"'),
    ("â€\u009d", '"'),
    ("â€“", "-"),
    ("â€”", "-"),
    ("â€¦", "..."),
    ("Â ", " "),
)

_REPLY_MARKERS = (
    re.compile(r"^On\s.+wrote:?", re.IGNORECASE),
    re.compile(r"^From:.*Sent:.*To:", re.IGNORECASE),
    re.compile(r"^-{2,}\s?Original Message\s?-{2,}", re.IGNORECASE),
    re.compile(r"^_{5,}"),
    re.compile(r"^>"),
    re.compile(r"^--[A-Za-z0-9._=-]{6,}(--)?$"),
    re.compile(r"^(Content-Type|Content-Transfer-Encoding):", re.IGNORECASE),
    re.compile(r"^charset=", re.IGNORECASE),
)
_HEADER_BLOCK_START = re.compile(r"^(From|Sent):\s", re.IGNORECASE)
_HEADER_BLOCK_FOLLOW = re.compile(r"^(From|Sent|To|Date|Subject|Cc):\s", re.IGNORECASE)
_SIGNATURE_MARKERS = (
    re.compile(r"^Sent from\b", re.IGNORECASE),
    re.compile(r"^Get Outlook\b", re.IGNORECASE),
    re.compile(r"^--\s*$"),
    re.compile(
        r"^(Regards|Kind regards|Best regards|Warm regards|Thanks|Thank you|Many thanks|Cheers|Sincerely)[\s,.!]*$",
        re.IGNORECASE,
    ),
)
_ALTERNATIVE_REPLY = re.compile(r"^([\s\S]*?)(?:\n\s*>|\n\s*On\s+\w+|\n\s*From:)", re.IGNORECASE)

_ARTIFACT_LINES = (
    re.compile(
        r"^(Content-Type|Content-Transfer-Encoding|Content-Disposition|MIME-Version|"
        r"Message-ID|X-[A-Za-z0-9-]+):.*$",
        re.IGNORECASE | re.MULTILINE,
    ),
    re.compile(r"^\s*boundary=.*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^\s*charset=.*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^--[A-Za-z0-9._=-]+(--)?$", re.MULTILINE),
    re.compile(r"^\s*=\s*$", re.MULTILINE),
)

_INLINE_SPACE = re.compile(r"[ \t ]+")
_EXCESS_BLANK_LINES = re.compile(r"\n(?:[ \t]*\n){3,}")


@dataclass(frozen=True)
class NormalizedContent:
    """Body and subject extracted from a raw payload."""

    body: str
    subject: Optional[str] = None
    method: str = "text"

    @property
    def is_sentinel(self) -> bool:
        return self.body == NO_CONTENT_SENTINEL


# ---------------------------------------------------------------------------
# Stand-alone decoders
# ---------------------------------------------------------------------------


def decode_bytes(raw: Union[bytes, str]) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw


def decode_html_entities(text: str) -> str:
    """Decode the fixed entity table plus numeric character references."""
    for entity, replacement in ENTITY_TABLE:
        if entity in text:
            text = text.replace(entity, replacement)

    def _char(code: int, original: str) -> str:
        try:
            return chr(code)
        except (ValueError, OverflowError):
            return original

    text = _NUMERIC_ENTITY.sub(lambda m: _char(int(m.group(1)), m.group(0)), text)
    text = _HEX_ENTITY.sub(lambda m: _char(int(m.group(1), 16), m.group(0)), text)
    return text


def decode_quoted_printable(text: str) -> str:
    """Decode ``=XX`` escapes and soft line breaks.

    Only applied when the text carries a quoted-printable telltale so plain
    text such as ``id=12`` is left alone. Runs of escapes are decoded together
    so multi-byte UTF-8 sequences come out as single characters.
    """
    if not _QP_TELLTALE.search(text):
        return text
    text = _QP_SOFT_BREAK.sub("", text)

    def _decode_run(match: re.Match) -> str:
        hex_digits = match.group(0).replace("=", "")
        return bytes.fromhex(hex_digits).decode("utf-8", errors="replace")

    return _QP_RUN.sub(_decode_run, text)


def decode_base64_segments(text: str) -> str:
    """Decode base64 payloads that leaked through MIME parsing."""

    def _decode_segment(match: re.Match) -> str:
        payload = re.sub(r"\s", "", match.group(1))
        try:
            return base64.b64decode(payload, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError, ValueError):
            return match.group(0)

    text = _BOUNDARY_BASE64.sub(_decode_segment, text)

    stripped = text.strip()
    if len(stripped) > 50 and _STANDALONE_BASE64.match(stripped):
        cleaned = re.sub(r"\s", "", stripped)
        if cleaned and len(cleaned) % 4 == 0:
            try:
                decoded = base64.b64decode(cleaned, validate=True).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError, ValueError):
                decoded = ""
            # real text has spaces; random identifiers do not
            printable = all(ch.isprintable() or ch.isspace() for ch in decoded)
            if len(decoded) > 10 and " " in decoded and printable:
                return decoded
    return text


def strip_mime_artifacts(text: str) -> str:
    for pattern in _ARTIFACT_LINES:
        text = pattern.sub("", text)
    return text


def collapse_whitespace(text: str) -> str:
    lines = [_INLINE_SPACE.sub(" ", line).strip() for line in text.splitlines()]
    text = "\n".join(lines)
    text = _EXCESS_BLANK_LINES.sub("\n\n\n", text)
    return text.strip()


def _is_reply_marker(lines: List[str], index: int) -> bool:
    line = lines[index].strip()
    if any(pattern.match(line) for pattern in _REPLY_MARKERS):
        return True
    if _HEADER_BLOCK_START.match(line):
        for following in lines[index + 1 :]:
            following = following.strip()
            if not following:
                continue
            return bool(_HEADER_BLOCK_FOLLOW.match(following))
    return False


def _is_signature_marker(line: str) -> bool:
    return any(pattern.match(line) for pattern in _SIGNATURE_MARKERS)


def trim_to_reply(text: str) -> str:
    """Keep only the correspondent's own reply.

    Quoted-reply markers stop collection only once real content has been
    captured; markers seen before that are skipped so a message starting with
    an artifact line is not reduced to nothing. Signature markers likewise
    stop collection only after content.
    """
    lines = text.splitlines()
    collected: List[str] = []
    found_content = False

    for index, raw_line in enumerate(lines):
        line = raw_line.strip()
        if _is_reply_marker(lines, index):
            if found_content:
                break
            continue
        if found_content and _is_signature_marker(line):
            break
        if line:
            found_content = True
            collected.append(raw_line)
        elif found_content:
            collected.append("")

    reply = "\n".join(collected).strip()
    if not found_content or len(reply) < MIN_REPLY_LENGTH:
        match = _ALTERNATIVE_REPLY.match(text)
        if match and len(match.group(1).strip()) > MIN_REPLY_LENGTH:
            return match.group(1).strip()
    return reply


def content_hash(body: str) -> str:
    """Hash of the normalized body, insensitive to case and spacing."""
    canonical = " ".join(body.split()).casefold()
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class ContentNormalizer:
    """Normalize raw email/SMS payloads into clean reply text."""

    def __init__(self) -> None:
        self.html_converter = html2text.HTML2Text()
        # links are rewritten to "text (url)" before conversion
        self.html_converter.ignore_links = True
        self.html_converter.ignore_images = True
        self.html_converter.ignore_emphasis = True
        self.html_converter.body_width = 0

    def normalize(
        self,
        raw: Union[bytes, str],
        *,
        channel: Channel,
        content_type: Optional[str] = None,
    ) -> NormalizedContent:
        """Return the cleaned body (never empty) and, for mail, the subject."""
        try:
            if channel == Channel.EMAIL:
                text, subject, method = self.extract_mail(raw, content_type)
                body = self.clean_email_text(text, method=method)
            else:
                subject, method = None, "sms_text"
                body = self.clean_sms_text(decode_bytes(raw))
        except ContentExtractionFailure as exc:
            logger.warning(f"Content extraction failed, using sentinel: {exc}")
            return NormalizedContent(body=NO_CONTENT_SENTINEL, subject=None, method="failed")

        if len(body) < MIN_BODY_LENGTH:
            logger.debug("Extracted content too short, using sentinel", extra={"method": method})
            body = NO_CONTENT_SENTINEL
        return NormalizedContent(body=body, subject=subject, method=method)

    # -- extraction ---------------------------------------------------------

    def extract_mail(
        self, raw: Union[bytes, str], content_type: Optional[str] = None
    ) -> Tuple[str, Optional[str], str]:
        """Pull the best text representation out of a mail payload.

        Returns ``(text, subject, method)``. Prefers ``text/plain``, then
        converted ``text/html``, then the raw payload decoded as UTF-8.
        """
        raw_bytes = raw if isinstance(raw, bytes) else raw.encode("utf-8", errors="replace")
        if not raw_bytes.strip():
            return "", None, "empty"

        if not self._looks_like_structured_mail(raw_bytes):
            text = decode_bytes(raw_bytes)
            if content_type and "html" in content_type.lower():
                return self.html_to_text(text), None, "html_conversion"
            if _ANY_TAG.search(text) and re.search(r"<(html|body|div|p|br)\b", text, re.IGNORECASE):
                return self.html_to_text(text), None, "html_conversion"
            return text, None, "raw_text"

        try:
            msg = message_from_bytes(raw_bytes, policy=email_policy)
        except Exception as exc:  # noqa: BLE001 - parser failures degrade to raw text
            logger.warning(f"MIME parsing failed, using raw payload: {exc}")
            return decode_bytes(raw_bytes), None, "raw_text"

        subject = self._extract_subject(msg)
        try:
            plain, html = self._extract_parts(msg)
        except (ValueError, TypeError, UnicodeError) as exc:
            raise ContentExtractionFailure(f"Could not decode message parts: {exc}") from exc
        if plain and plain.strip():
            return plain, subject, "plain_text"
        if html and html.strip():
            return self.html_to_text(html), subject, "html_conversion"

        payload = msg.get_payload(decode=True) if not msg.is_multipart() else None
        if payload:
            return payload.decode("utf-8", errors="replace"), subject, "raw_payload"
        body_start = raw_bytes.find(b"\n\n")
        fallback = raw_bytes[body_start + 2 :] if body_start >= 0 else raw_bytes
        return decode_bytes(fallback), subject, "raw_text"

    def html_to_text(self, html: str) -> str:
        html = _SCRIPT_STYLE.sub("", html)
        html = _LINK.sub(self._rewrite_link, html)
        try:
            return self.html_converter.handle(html).strip()
        except Exception as exc:  # noqa: BLE001 - html2text raises assorted errors
            logger.warning(f"HTML to text conversion failed, using regex fallback: {exc}")
            return self._html_to_text_fallback(html)

    @staticmethod
    def _rewrite_link(match: re.Match) -> str:
        url = match.group(1).strip()
        text = _ANY_TAG.sub("", match.group(2)).strip()
        if not text or text == url:
            return url
        return f"{text} ({url})"

    @staticmethod
    def _html_to_text_fallback(html: str) -> str:
        text = _BLOCK_TAG.sub("\n", html)
        text = _CELL_END.sub("\t", text)
        text = _HR_TAG.sub("\n---\n", text)
        text = _ANY_TAG.sub("", text)
        text = decode_html_entities(text)
        return collapse_whitespace(text)

    @staticmethod
    def _looks_like_structured_mail(raw: bytes) -> bool:
        head = raw.lstrip()[:4096].decode("utf-8", errors="replace")
        header_block, separator, _ = head.replace("\r\n", "\n").partition("\n\n")
        if not separator:
            return False
        lines = [line for line in header_block.split("\n") if line and not line[0].isspace()]
        if not lines or not all(_HEADER_LINE.match(line) for line in lines):
            return False
        return any(_KNOWN_HEADER.match(line) for line in lines)

    @staticmethod
    def _extract_subject(msg: StdEmailMessage) -> Optional[str]:
        try:
            subject = msg.get("Subject")
        except Exception as exc:  # noqa: BLE001 - malformed encoded words
            logger.debug(f"Undecodable subject header: {exc}")
            return None
        if not subject:
            return None
        subject = " ".join(str(subject).split())
        return subject or None

    def _extract_parts(self, msg: StdEmailMessage) -> Tuple[Optional[str], Optional[str]]:
        plain: Optional[str] = None
        html: Optional[str] = None
        parts = msg.walk() if msg.is_multipart() else [msg]
        for part in parts:
            if part.is_multipart() or part.get_content_disposition() == "attachment":
                continue
            content_type = part.get_content_type()
            if content_type == "text/plain" and plain is None:
                plain = self._part_text(part)
            elif content_type == "text/html" and html is None:
                html = self._part_text(part)
        return plain, html

    @staticmethod
    def _part_text(part: StdEmailMessage) -> Optional[str]:
        try:
            return part.get_content()
        except (LookupError, UnicodeError, AssertionError, KeyError) as exc:
            logger.debug(f"Part decode failed, retrying as UTF-8: {exc}")
        payload = part.get_payload(decode=True)
        if payload is None:
            return None
        return payload.decode("utf-8", errors="replace")

    # -- cleanup ------------------------------------------------------------

    def clean_email_text(self, text: str, method: str = "raw_text") -> str:
        if not text or not text.strip():
            return ""
        text = text.replace("\r\n", "\n")
        text = decode_base64_segments(text)
        text = decode_html_entities(text)
        text = decode_quoted_printable(text)
        if method != "plain_text":
            text = _HTML_TAG.sub(" ", text)
        text = trim_to_reply(text)
        text = strip_mime_artifacts(text)
        return collapse_whitespace(text)

    def clean_sms_text(self, text: str) -> str:
        if not text or not text.strip():
            return ""
        text = decode_html_entities(text.replace("\r\n", "\n"))
        return collapse_whitespace(text)


_default_normalizer: Optional[ContentNormalizer] = None


def normalize(
    raw: Union[bytes, str], *, channel: Channel, content_type: Optional[str] = None
) -> NormalizedContent:
    """Module-level convenience around a shared :class:`ContentNormalizer`."""
    global _default_normalizer
    if _default_normalizer is None:
        _default_normalizer = ContentNormalizer()
    return _default_normalizer.normalize(raw, channel=channel, content_type=content_type)


__all__ = [
    "ContentNormalizer",
    "ENTITY_TABLE",
    "MIN_BODY_LENGTH",
    "NO_CONTENT_SENTINEL",
    "NormalizedContent",
    "collapse_whitespace",
    "content_hash",
    "decode_base64_segments",
    "decode_html_entities",
    "decode_quoted_printable",
    "normalize",
    "strip_mime_artifacts",
    "trim_to_reply",
]
