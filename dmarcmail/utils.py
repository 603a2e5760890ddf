"""Utility functions that might be useful for other projects"""

import base64
import binascii
import email.utils
import json
import logging
import quopri
import re
from collections import OrderedDict
from datetime import datetime, timezone

import mailparser
from dateutil.parser import parse as parse_date

from dmarcmail.log import logger

parenthesis_regex = re.compile(r"\s*\(.*\)\s*")
leading_integer_regex = re.compile(r"^\s*([+-]?\d+)")
folding_whitespace_regex = re.compile(r"\r?\n[ \t]+")

mailparser_logger = logging.getLogger("mailparser")
mailparser_logger.setLevel(logging.CRITICAL)


class EmailParserError(RuntimeError):
    """Raised when an error parsing the email occurs"""


def decode_base64(data):
    """
    Decodes a base64 string, with padding being optional

    Args:
        data: A base64 encoded string

    Returns:
        bytes: The decoded bytes

    """
    data = bytes("".join(data.split()), encoding="ascii")
    missing_padding = len(data) % 4
    if missing_padding != 0:
        data += b"=" * (4 - missing_padding)
    return base64.b64decode(data)


def encode_base64(data):
    """Encodes bytes (or UTF-8 text) as a base64 ``str``"""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.b64encode(bytes(data)).decode("ascii")


def parse_int(value):
    """
    Leniently parses a base 10 integer from the start of a value

    Leading whitespace and trailing garbage are ignored, so ``"42 "``,
    ``"42abc"`` and ``"42.9"`` all give ``42``.

    Args:
        value: The value to parse

    Returns:
        int: The parsed integer, or ``0`` if no integer could be parsed
    """
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if not isinstance(value, str):
        return 0
    match = leading_integer_regex.match(value)
    if match is None:
        return 0
    return int(match.group(1))


def timestamp_to_datetime(timestamp):
    """
    Converts a UNIX/DMARC timestamp to a timezone-aware UTC ``datetime``

    Args:
        timestamp (int): The timestamp

    Returns:
        datetime: The converted timestamp as a Python ``datetime`` object
    """
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)


def timestamp_to_iso(timestamp):
    """
    Converts a UNIX/DMARC timestamp to an ISO 8601 UTC string

    Args:
        timestamp: The timestamp

    Returns:
        str: The converted timestamp, e.g. ``2021-01-01T00:00:00+00:00``,
        or ``""`` if it is outside the range of ``datetime``
    """
    try:
        return timestamp_to_datetime(timestamp).isoformat()
    except (ValueError, OverflowError, OSError) as e:
        logger.warning(
            "Timestamp {0} is out of range: {1}".format(timestamp, e.__str__())
        )
        return ""


def human_timestamp_to_datetime(human_timestamp, to_utc=False):
    """
    Converts a human-readable timestamp into a Python ``datetime`` object

    Args:
        human_timestamp (str): A timestamp string
        to_utc (bool): Convert the timestamp to UTC

    Returns:
        datetime: The converted timestamp
    """

    human_timestamp = human_timestamp.replace("-0000", "")
    human_timestamp = parenthesis_regex.sub("", human_timestamp)

    dt = parse_date(human_timestamp)
    return dt.astimezone(timezone.utc) if to_utc else dt


def utc_now_iso():
    """Returns the current UTC time as an ISO 8601 string"""
    return datetime.now(timezone.utc).isoformat()


def unfold_header(value):
    """Joins the lines of a folded RFC 5322 header value"""
    if not isinstance(value, str):
        return value
    return folding_whitespace_regex.sub(" ", value)


def parse_email_address(original_address):
    if original_address[0] == "":
        display_name = None
    else:
        display_name = unfold_header(original_address[0])
    address = unfold_header(original_address[1]).strip()
    address_parts = address.split("@")
    local = None
    domain = None
    if len(address_parts) > 1:
        local = address_parts[0].lower()
        domain = address_parts[-1].lower()

    return OrderedDict(
        [
            ("display_name", display_name),
            ("address", address),
            ("local", local),
            ("domain", domain),
        ]
    )


def format_email_address(address):
    """
    Renders a parsed email address as display text

    Args:
        address (dict): An address returned by ``parse_email_address``

    Returns:
        str: ``Display Name <user@example.com>``, or the bare address
    """
    if not address:
        return ""
    return email.utils.formataddr(
        (address.get("display_name") or "", address.get("address") or "")
    )


def format_address_list(addresses):
    """Renders a list of parsed email addresses as comma-separated text"""
    if not addresses:
        return ""
    if isinstance(addresses, dict):
        addresses = [addresses]
    return ", ".join(map(format_email_address, addresses))


def _attachment_content(attachment):
    payload = attachment.get("payload")
    if payload is None:
        return b""
    if isinstance(payload, bytes):
        return payload
    encoding = str(attachment.get("content_transfer_encoding") or "").lower()
    if encoding == "quoted-printable" and attachment.get("binary"):
        return quopri.decodestring(payload.encode("ascii", errors="ignore"))
    if attachment.get("binary") or encoding == "base64":
        try:
            return decode_base64(payload)
        except (binascii.Error, ValueError) as e:
            logger.debug("Unable to decode attachment: {0}".format(e.__str__()))
    return payload.encode("utf-8", errors="replace")


def parse_email(data):
    """
    A simplified email parser

    Args:
        data: The RFC 822 message as a string or bytes

    Returns:
        dict: Parsed email data, with attachment payloads decoded to bytes
        under the ``content`` key of each attachment
    """

    if isinstance(data, (bytes, bytearray, memoryview)):
        data = bytes(data).decode("utf-8", errors="replace")
    try:
        mail = mailparser.parse_from_string(data)
        headers = json.loads(mail.headers_json).copy()
        parsed_email = json.loads(mail.mail_json).copy()
    except Exception as e:
        raise EmailParserError(e.__str__()) from e
    parsed_email["headers"] = headers

    if parsed_email.get("from"):
        parsed_email["from"] = parse_email_address(parsed_email["from"][0])
    else:
        parsed_email["from"] = None

    for field in ["to", "cc", "bcc"]:
        if field in parsed_email:
            parsed_email[field] = list(
                map(lambda x: parse_email_address(x), parsed_email[field])
            )
        else:
            parsed_email[field] = []

    if parsed_email.get("date"):
        parsed_email["date"] = parsed_email["date"].replace("T", " ")
    elif "Date" in headers:
        try:
            date = human_timestamp_to_datetime(unfold_header(headers["Date"]))
            parsed_email["date"] = str(date)
        except (ValueError, OverflowError):
            parsed_email["date"] = None
    else:
        parsed_email["date"] = None

    message_id = parsed_email.get("message_id")
    if not message_id:
        message_id = headers.get("Message-ID") or headers.get("Message-Id")
    parsed_email["message_id"] = unfold_header(message_id)
    parsed_email["subject"] = unfold_header(parsed_email.get("subject"))

    parsed_email["text"] = "\n".join(mail.text_plain)
    parsed_email["html"] = "\n".join(mail.text_html)

    if "attachments" not in parsed_email:
        parsed_email["attachments"] = []
    for attachment in parsed_email["attachments"]:
        attachment["content"] = _attachment_content(attachment)
        if "payload" in attachment:
            del attachment["payload"]

    return parsed_email


def to_json(obj, **kwargs):
    """``json.dumps`` that renders bytes as base64 and other unknown types
    as strings"""

    def _default(value):
        if isinstance(value, (bytes, bytearray)):
            return encode_base64(value)
        return str(value)

    return json.dumps(obj, default=_default, ensure_ascii=False, **kwargs)
