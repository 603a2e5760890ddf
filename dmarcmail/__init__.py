# -*- coding: utf-8 -*-

"""A Python package for turning inbound DMARC report emails into
normalized records"""

from __future__ import annotations

import json
import mimetypes
import os
import re
import xml.parsers.expat as expat
import zipfile
import zlib
from csv import DictWriter
from io import BytesIO, StringIO
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
    Union,
)
from urllib.parse import quote

import xmltodict

from dmarcmail.constants import DEFAULT_MAX_REPORT_SIZE, __version__
from dmarcmail.log import logger
from dmarcmail.mail import MailboxConnection
from dmarcmail.types import (
    AlignmentType,
    AnalyticsDataPoint,
    Attachment,
    ContainerKind,
    DeletedEmailData,
    DispositionType,
    DMARCResultType,
    DmarcEmailData,
    DmarcRecordRow,
    ErrorEmailData,
    ParsedEmail,
    PolicyOverrideType,
    PolicyPublished,
    RegularEmailData,
    ReportMetadata,
)
from dmarcmail.utils import (
    EmailParserError,
    encode_base64,
    format_address_list,
    format_email_address,
    parse_email,
    parse_int,
    timestamp_to_iso,
    to_json,
    utc_now_iso,
)

logger.debug("dmarcmail v{0}".format(__version__))

xml_header_regex = re.compile(r"^<\?xml .*?>", re.MULTILINE)
xml_schema_regex = re.compile(r"</??xs:schema.*>", re.MULTILINE)

DMARC_SUBJECT_KEYWORDS = ("dmarc", "report domain", "aggregate report")

# Canonical extensions of the MIME types DMARC reporters use, as listed
# in mime-db. Anything else falls through to the mimetypes table.
MIME_TYPE_EXTENSIONS = {
    "application/gzip": "gz",
    "application/x-gzip": "gz",
    "application/zip": "zip",
    "application/x-zip": "zip",
    "application/x-zip-compressed": "zip",
    "application/xml": "xml",
    "text/xml": "xml",
}

EXTENSION_CONTAINER_KINDS = {
    "gz": ContainerKind.GZIP,
    "zip": ContainerKind.ZIP,
    "xml": ContainerKind.PLAIN_XML,
}

REQUIRED_REPORT_SECTIONS = ("report_metadata", "policy_published", "record")

DMARC_CSV_FIELDS = list(DmarcRecordRow._fields)


class ParserError(RuntimeError):
    """Raised whenever the parser fails for some reason"""


class DecodeError(ParserError):
    """Raised when a report attachment cannot be turned into XML text"""


class UnsupportedContainer(DecodeError):
    """Raised when an attachment is not gzip, zip, or XML"""


class CorruptArchive(DecodeError):
    """Raised when compressed report data cannot be decompressed"""


class EmptyArchive(DecodeError):
    """Raised when a zip archive has no entries"""


class ReportTooLarge(DecodeError):
    """Raised when decompressed report data exceeds the size limit"""


class ParseError(ParserError):
    """Raised when report XML cannot be parsed into an aggregate report"""


class MalformedReport(ParseError):
    """Raised when the report is not well-formed XML"""


class InvalidShape(ParseError):
    """Raised when a required aggregate report section is missing"""


class FlattenError(ParserError):
    """Raised when an aggregate report cannot be flattened into rows"""


class MissingField(FlattenError):
    """Raised when a record is missing a required field"""

    def __init__(self, field_path: str):
        super().__init__("Missing field: {0}".format(field_path))
        self.field_path = field_path


def resolve_container_kind(mime_type: Optional[str]) -> ContainerKind:
    """
    Maps the declared MIME type of an attachment to the container the
    report is shipped in

    Args:
        mime_type (str): A MIME type, e.g. ``application/gzip``

    Returns:
        ContainerKind: ``UNSUPPORTED`` for anything that is not gzip, zip,
        or XML
    """
    if not isinstance(mime_type, str):
        return ContainerKind.UNSUPPORTED
    mime_type = mime_type.split(";", 1)[0].strip().lower()
    if not mime_type:
        return ContainerKind.UNSUPPORTED
    extension = MIME_TYPE_EXTENSIONS.get(mime_type)
    if extension is None:
        guessed = mimetypes.guess_extension(mime_type, strict=False)
        extension = guessed.lstrip(".") if guessed else ""
    return EXTENSION_CONTAINER_KINDS.get(extension, ContainerKind.UNSUPPORTED)


def _inflate(content: bytes, max_size: int) -> bytes:
    data = b""
    # A gzip stream may hold several members, which are concatenated
    while True:
        # MAX_WBITS | 32 accepts both gzip and zlib headers
        decompressor = zlib.decompressobj(zlib.MAX_WBITS | 32)
        try:
            data += decompressor.decompress(content, max_size + 1 - len(data))
        except zlib.error as error:
            raise CorruptArchive(
                "Invalid compressed data: {0}".format(error.__str__())
            ) from error
        if len(data) > max_size:
            raise ReportTooLarge(
                "Decompressed report exceeds {0} bytes".format(max_size)
            )
        if not decompressor.eof:
            raise CorruptArchive("Compressed data is truncated")
        # Trailing zero padding is not another member
        content = decompressor.unused_data.lstrip(b"\x00")
        if not content:
            return data


def _read_first_zip_entry(content: bytes, max_size: int) -> bytes:
    try:
        with zipfile.ZipFile(BytesIO(content)) as archive:
            entries = archive.infolist()
            if len(entries) == 0:
                raise EmptyArchive("No entries in zip archive")
            # Only the first entry is read, whatever else the archive holds
            entry = entries[0]
            if len(entries) > 1:
                logger.debug(
                    "Zip archive has {0} entries, using {1}".format(
                        len(entries), entry.filename
                    )
                )
            if entry.file_size > max_size:
                raise ReportTooLarge(
                    "Zip entry {0} exceeds {1} bytes".format(entry.filename, max_size)
                )
            with archive.open(entry) as entry_file:
                data = entry_file.read(max_size + 1)
    except DecodeError:
        raise
    except (zipfile.BadZipFile, zlib.error, NotImplementedError, RuntimeError,
            EOFError, ValueError) as error:
        raise CorruptArchive(
            "Invalid zip archive: {0}".format(error.__str__())
        ) from error
    if len(data) > max_size:
        raise ReportTooLarge("Zip entry exceeds {0} bytes".format(max_size))
    return data


def extract_report(
    content: Union[bytes, str],
    kind: ContainerKind,
    *,
    max_size: int = DEFAULT_MAX_REPORT_SIZE,
) -> str:
    """
    Extracts report XML text from attachment content

    Args:
        content (bytes): The raw attachment content
        kind (ContainerKind): The container the content is shipped in
        max_size (int): The largest decompressed report accepted, in bytes

    Returns:
        str: The extracted XML text
    """
    if kind is ContainerKind.UNSUPPORTED:
        raise UnsupportedContainer("Not a gzip, zip, or xml attachment")
    if isinstance(content, str):
        if kind is ContainerKind.PLAIN_XML:
            return content
        raise DecodeError("Compressed report content must be bytes")

    content = bytes(content)
    if kind is ContainerKind.GZIP:
        data = _inflate(content, max_size)
    elif kind is ContainerKind.ZIP:
        data = _read_first_zip_entry(content, max_size)
    else:
        if len(content) > max_size:
            raise ReportTooLarge("Report exceeds {0} bytes".format(max_size))
        data = content

    return data.decode("utf-8", errors="ignore")


def parse_report_xml(xml: str) -> Dict[str, Any]:
    """
    Parses DMARC aggregate report XML into a dict and checks that the
    required report sections are present

    Repeated elements become lists and single elements do not, so a report
    with one ``<record>`` has a dict, not a list, at ``feedback.record``.

    Args:
        xml (str): A string of DMARC aggregate report XML

    Returns:
        dict: The parsed XML document
    """
    if isinstance(xml, bytes):
        xml = xml.decode(errors="ignore")
    # Replace XML header (sometimes they are invalid)
    xml = xml_header_regex.sub('<?xml version="1.0"?>', xml.lstrip("\ufeff"))
    # Remove invalid schema tags
    xml = xml_schema_regex.sub("", xml)

    try:
        document = xmltodict.parse(xml)
    except expat.ExpatError as error:
        raise MalformedReport("Invalid XML: {0}".format(error.__str__())) from error

    feedback = document.get("feedback") if isinstance(document, dict) else None
    if not isinstance(feedback, dict):
        raise InvalidShape("Report missing required section: feedback")
    for section in REQUIRED_REPORT_SECTIONS:
        if feedback.get(section) is None:
            raise InvalidShape(
                "Report missing required section: feedback.{0}".format(section)
            )

    return document


def _as_list(value: Any) -> List[Any]:
    """Normalizes an element that may have been parsed as a single value or
    as a list of values into a list"""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _text(value: Any) -> Optional[str]:
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = value.get("#text")
    if value is None:
        return None
    return str(value)


def _get(mapping: Any, *keys: str) -> Any:
    value = mapping
    for key in keys:
        if isinstance(value, list):
            value = value[0] if value else None
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def _require(mapping: Any, key: str, path: str) -> Dict[str, Any]:
    value = _get(mapping, key)
    if isinstance(value, list):
        value = value[0] if value else None
    if not isinstance(value, dict):
        raise MissingField("{0}.{1}".format(path, key))
    return value


def get_report_metadata(report: Dict[str, Any]) -> ReportMetadata:
    """
    Extracts the report metadata of a parsed aggregate report

    Args:
        report (dict): A document returned by ``parse_report_xml``

    Returns:
        ReportMetadata: The report metadata
    """
    metadata = _get(report, "feedback", "report_metadata")
    report_id = _text(_get(metadata, "report_id"))
    if report_id is None:
        raise MissingField("feedback.report_metadata.report_id")
    errors = [_text(e) or "" for e in _as_list(_get(metadata, "error"))]

    return ReportMetadata(
        report_id=report_id,
        org_name=_text(_get(metadata, "org_name")) or "",
        date_range_begin=parse_int(_text(_get(metadata, "date_range", "begin"))),
        date_range_end=parse_int(_text(_get(metadata, "date_range", "end"))),
        errors=json.dumps(errors, separators=(",", ":")) if errors else "",
    )


def get_policy_published(report: Dict[str, Any]) -> PolicyPublished:
    """
    Extracts the published policy of a parsed aggregate report

    Args:
        report (dict): A document returned by ``parse_report_xml``

    Returns:
        PolicyPublished: The published policy
    """
    policy = _get(report, "feedback", "policy_published")

    return PolicyPublished(
        domain=_text(_get(policy, "domain")) or "",
        adkim=AlignmentType.from_label(_text(_get(policy, "adkim"))),
        aspf=AlignmentType.from_label(_text(_get(policy, "aspf"))),
        p=DispositionType.from_label(_text(_get(policy, "p"))),
        sp=DispositionType.from_label(_text(_get(policy, "sp"))),
        pct=parse_int(_text(_get(policy, "pct"))),
    )


def _parse_report_record(
    record: Any,
    index: int,
    metadata: ReportMetadata,
    policy: PolicyPublished,
) -> DmarcRecordRow:
    path = "feedback.record[{0}]".format(index)
    row = _require(record, "row", path)
    policy_evaluated = _require(row, "policy_evaluated", path + ".row")
    if isinstance(record, dict) and "identities" in record:
        identifiers = _require(record, "identities", path)
    else:
        identifiers = _require(record, "identifiers", path)
    reasons = _as_list(policy_evaluated.get("reason"))
    reason_type = _text(_get(reasons[0], "type")) if reasons else None

    return DmarcRecordRow(
        # Only the first hyphen is replaced
        report_metadata_report_id=metadata.report_id.replace("-", "_", 1),
        report_metadata_org_name=metadata.org_name,
        report_metadata_date_range_begin=metadata.date_range_begin,
        report_metadata_date_range_end=metadata.date_range_end,
        report_metadata_error=metadata.errors,
        policy_published_domain=policy.domain,
        policy_published_adkim=policy.adkim,
        policy_published_aspf=policy.aspf,
        policy_published_p=policy.p,
        policy_published_sp=policy.sp,
        policy_published_pct=policy.pct,
        record_row_source_ip=_text(row.get("source_ip")) or "",
        record_row_count=parse_int(_text(row.get("count"))),
        record_row_policy_evaluated_dkim=DMARCResultType.from_label(
            _text(policy_evaluated.get("dkim"))
        ),
        record_row_policy_evaluated_spf=DMARCResultType.from_label(
            _text(policy_evaluated.get("spf"))
        ),
        record_row_policy_evaluated_disposition=DispositionType.from_label(
            _text(policy_evaluated.get("disposition"))
        ),
        record_row_policy_evaluated_reason_type=PolicyOverrideType.from_label(
            reason_type
        ),
        record_identifiers_envelope_to=_text(identifiers.get("envelope_to")) or "",
        record_identifiers_header_from=_text(identifiers.get("header_from")) or "",
    )


def get_report_rows(report: Dict[str, Any]) -> List[DmarcRecordRow]:
    """
    Flattens a parsed aggregate report into one row per record, in document
    order

    Args:
        report (dict): A document returned by ``parse_report_xml``

    Returns:
        list: A ``DmarcRecordRow`` for each ``<record>`` in the report
    """
    records = _as_list(_get(report, "feedback", "record"))
    metadata = get_report_metadata(report)
    policy = get_policy_published(report)
    logger.debug(
        "Flattening report {0} from {1} with {2} records".format(
            metadata.report_id, metadata.org_name, len(records)
        )
    )

    return [
        _parse_report_record(record, index, metadata, policy)
        for index, record in enumerate(records)
    ]


def is_dmarc_candidate(subject: Optional[str], attachments: Sequence[Attachment]) -> bool:
    """
    Checks if an email looks like a DMARC aggregate report

    Only the first attachment is considered.

    Args:
        subject (str): The email subject
        attachments (list): The email attachments

    Returns:
        bool: ``True`` if the subject mentions DMARC reporting and the first
        attachment is gzip, zip, or XML
    """
    if not attachments:
        return False
    subject = (subject or "").lower()
    if not any(keyword in subject for keyword in DMARC_SUBJECT_KEYWORDS):
        return False
    kind = resolve_container_kind(attachments[0].mime_type)
    return kind is not ContainerKind.UNSUPPORTED


def get_attachments(parsed_email: ParsedEmail) -> List[Attachment]:
    """Builds ``Attachment`` values from the attachments of a parsed email"""
    attachments = []
    for attachment in parsed_email.get("attachments") or []:
        attachments.append(
            Attachment(
                mime_type=attachment.get("mail_content_type") or "",
                filename=attachment.get("filename") or "",
                content=attachment.get("content") or b"",
            )
        )
    return attachments


def parse_aggregate_report_attachment(
    attachment: Attachment,
    *,
    max_size: int = DEFAULT_MAX_REPORT_SIZE,
) -> Dict[str, Any]:
    """
    Decodes, parses, and flattens an aggregate report attachment

    Args:
        attachment (Attachment): The report attachment
        max_size (int): The largest decompressed report accepted, in bytes

    Returns:
        dict:
        * ``xml``: The decoded report XML
        * ``report_metadata``: ``ReportMetadata``
        * ``policy_published``: ``PolicyPublished``
        * ``records``: A list of ``DmarcRecordRow``
    """
    kind = resolve_container_kind(attachment.mime_type)
    logger.debug(
        "Extracting {0} report from {1} ({2})".format(
            kind.value, attachment.filename, attachment.mime_type
        )
    )
    xml = extract_report(attachment.content, kind, max_size=max_size)
    report = parse_report_xml(xml)
    rows = get_report_rows(report)

    return {
        "xml": xml,
        "report_metadata": get_report_metadata(report),
        "policy_published": get_policy_published(report),
        "records": rows,
    }


def _envelope(parsed_email: ParsedEmail) -> Dict[str, str]:
    return {
        "from": format_email_address(parsed_email.get("from")),
        "to": format_address_list(parsed_email.get("to")),
        "subject": parsed_email.get("subject") or "",
        "date": parsed_email.get("date") or utc_now_iso(),
    }


def build_dmarc_email_data(
    parsed_email: ParsedEmail,
    *,
    max_report_size: int = DEFAULT_MAX_REPORT_SIZE,
) -> Tuple[DmarcEmailData, List[DmarcRecordRow]]:
    """
    Builds the record for an email carrying a DMARC aggregate report

    Args:
        parsed_email (dict): An email returned by ``utils.parse_email``
        max_report_size (int): The largest decompressed report accepted

    Returns:
        tuple: The email record and the flattened report rows
    """
    attachment = get_attachments(parsed_email)[0]
    result = parse_aggregate_report_attachment(attachment, max_size=max_report_size)
    metadata: ReportMetadata = result["report_metadata"]
    policy: PolicyPublished = result["policy_published"]
    rows: List[DmarcRecordRow] = result["records"]
    logger.info(
        "Parsed DMARC report {0} from {1} for {2} with {3} records".format(
            metadata.report_id, metadata.org_name, policy.domain, len(rows)
        )
    )

    email_data = _envelope(parsed_email)
    email_data.update(
        {
            "type": "dmarc",
            "report_id": metadata.report_id,
            "org_name": metadata.org_name,
            "domain": policy.domain,
            "date_range": {
                "begin": timestamp_to_iso(metadata.date_range_begin),
                "end": timestamp_to_iso(metadata.date_range_end),
            },
            "report_metadata": metadata.to_dict(),
            "policy_published": policy.to_dict(),
            "records": [row.to_dict() for row in rows],
            "raw_xml": result["xml"],
            "attachment_name": attachment.filename,
            "attachment_content": encode_base64(attachment.content),
            "attachment_mime_type": attachment.mime_type,
        }
    )

    return email_data, rows


def build_regular_email_data(parsed_email: ParsedEmail) -> RegularEmailData:
    """Builds the record for an email that is not a DMARC report"""
    email_data = _envelope(parsed_email)
    email_data.update(
        {
            "type": "regular",
            "cc": format_address_list(parsed_email.get("cc")),
            "bcc": format_address_list(parsed_email.get("bcc")),
            "text": parsed_email.get("text") or "",
            "html": parsed_email.get("html") or "",
            "message_id": parsed_email.get("message_id") or "",
            "attachments": [
                {
                    "filename": attachment.filename,
                    "mime_type": attachment.mime_type,
                    "size": len(attachment.content),
                    "content": encode_base64(attachment.content),
                }
                for attachment in get_attachments(parsed_email)
            ],
        }
    )
    return email_data


def build_error_email_data(
    parsed_email: ParsedEmail, error_message: str
) -> ErrorEmailData:
    """Builds the fallback record for an email that failed processing"""
    email_data = _envelope(parsed_email)
    email_data.update(
        {
            "type": "error",
            "error_message": error_message,
            "raw_email": to_json(parsed_email),
        }
    )
    return email_data


def build_deleted_email_data(reason: str, delete_type: str) -> DeletedEmailData:
    """Builds the record for an email that arrived empty or unreadable"""
    now = utc_now_iso()
    return {
        "type": "deleted",
        "from": "",
        "to": "",
        "subject": "",
        "date": now,
        "error_message": reason,
        "delete_type": delete_type,
        "deleted_at": now,
        "raw_email": to_json(
            {"error": reason, "type": delete_type, "timestamp": now}
        ),
    }


def report_rows_to_data_points(
    rows: Sequence[DmarcRecordRow],
) -> List[AnalyticsDataPoint]:
    """
    Converts report rows to analytics data points

    Args:
        rows (list): Flattened report rows

    Returns:
        list: A dict of ``blobs``, ``doubles``, and ``indexes`` for each row
    """
    points = []
    for index, row in enumerate(rows):
        # Index values are limited to 32 bytes
        row_index = quote(
            "{0}-{1}".format(row.report_metadata_report_id, index),
            safe=";,/?:@&=+$-_.!~*'()#",
        )[:32]
        blobs = [
            row.report_metadata_report_id,
            row.report_metadata_org_name,
            row.report_metadata_error,
            row.policy_published_domain,
            row.record_row_source_ip,
            row.record_identifiers_envelope_to,
            row.record_identifiers_header_from,
        ]
        doubles = [
            row.report_metadata_date_range_begin,
            row.report_metadata_date_range_end,
            row.policy_published_adkim,
            row.policy_published_aspf,
            row.policy_published_p,
            row.policy_published_sp,
            row.policy_published_pct,
            row.record_row_count,
            row.record_row_policy_evaluated_dkim,
            row.record_row_policy_evaluated_spf,
            row.record_row_policy_evaluated_disposition,
            row.record_row_policy_evaluated_reason_type,
        ]
        points.append(
            {
                "blobs": blobs,
                "doubles": [float(d) for d in doubles],
                "indexes": [row_index],
            }
        )
    return points


def dmarc_rows_to_csv_rows(
    rows: Sequence[Union[DmarcRecordRow, Dict[str, Any]]],
) -> List[Dict[str, Any]]:
    """
    Converts report rows to a list of dicts in flat CSV format, with enum
    fields as their numeric codes
    """
    csv_rows = []
    for row in rows:
        if isinstance(row, DmarcRecordRow):
            row = row.to_dict()
        csv_rows.append({field: row.get(field, "") for field in DMARC_CSV_FIELDS})
    return csv_rows


def dmarc_rows_to_csv(rows: Sequence[Union[DmarcRecordRow, Dict[str, Any]]]) -> str:
    """
    Converts report rows to flat CSV format, including headers

    Args:
        rows (list): Flattened report rows, as ``DmarcRecordRow`` or dicts

    Returns:
        str: The rows in flat CSV format, including headers
    """
    csv_file_object = StringIO(newline="\n")
    writer = DictWriter(csv_file_object, DMARC_CSV_FIELDS)
    writer.writeheader()

    for row in dmarc_rows_to_csv_rows(rows):
        writer.writerow(row)
        csv_file_object.flush()

    return csv_file_object.getvalue()


def _save_email_quietly(client, email_data: Dict[str, Any]) -> None:
    if client is None:
        return
    try:
        client.save_email(email_data)
    except Exception as error:
        logger.warning(
            "Unable to save {0} email record: {1}".format(
                email_data["type"], error.__str__()
            )
        )


def process_email(
    raw: Union[bytes, str, None],
    *,
    client=None,
    max_report_size: int = DEFAULT_MAX_REPORT_SIZE,
) -> Dict[str, Any]:
    """
    Processes one inbound email and hands the resulting record to the
    delivery client

    DMARC aggregate reports become a ``dmarc`` record with one row per report
    record, other emails become a ``regular`` record. Any failure along the
    way is recorded as an ``error`` record instead, so this never raises for
    bad message content.

    Args:
        raw: The RFC 822 message, as bytes or a string
        client: A ``WebhookClient`` or ``None`` to only build the record
        max_report_size (int): The largest decompressed report accepted

    Returns:
        dict: The email record
    """
    if raw is None:
        logger.error("Message is missing")
        email_data = build_deleted_email_data("Message is missing", "message_null")
        _save_email_quietly(client, email_data)
        return email_data

    if len(raw) == 0:
        logger.error("Message is empty")
        email_data = build_deleted_email_data("Message is empty", "raw_empty")
        _save_email_quietly(client, email_data)
        return email_data

    try:
        parsed_email = parse_email(raw)
    except EmailParserError as error:
        logger.error("Unable to parse message: {0}".format(error.__str__()))
        email_data = build_deleted_email_data(
            "Unable to parse message: {0}".format(error.__str__()), "parse_failed"
        )
        _save_email_quietly(client, email_data)
        return email_data

    if (
        not parsed_email.get("from")
        and not parsed_email.get("to")
        and not parsed_email.get("subject")
    ):
        logger.error("Message has no sender, recipients, or subject")
        email_data = build_deleted_email_data(
            "Message content is incomplete", "content_incomplete"
        )
        _save_email_quietly(client, email_data)
        return email_data

    subject = parsed_email.get("subject")
    logger.info(
        "Processing mail from {0} with subject {1}".format(
            format_email_address(parsed_email.get("from")), subject
        )
    )
    try:
        if is_dmarc_candidate(subject, get_attachments(parsed_email)):
            email_data, rows = build_dmarc_email_data(
                parsed_email, max_report_size=max_report_size
            )
            if client is not None:
                client.save_email(email_data)
                client.save_data_points(report_rows_to_data_points(rows))
        else:
            logger.debug("Message with subject {0} is not a DMARC report".format(subject))
            email_data = build_regular_email_data(parsed_email)
            if client is not None:
                client.save_email(email_data)
    except Exception as error:
        logger.error(
            'Unable to process message with subject "{0}": {1}'.format(
                subject, error.__str__()
            )
        )
        email_data = build_error_email_data(parsed_email, error.__str__())
        _save_email_quietly(client, email_data)

    return email_data


def process_mailbox(
    connection: MailboxConnection,
    *,
    client=None,
    reports_folder: str = "INBOX",
    archive_folder: str = "Archive",
    delete: bool = False,
    test: bool = False,
    max_report_size: int = DEFAULT_MAX_REPORT_SIZE,
) -> List[Dict[str, Any]]:
    """
    Processes every message in a mailbox

    Args:
        connection: A Mailbox connection object
        client: A ``WebhookClient`` or ``None``
        reports_folder (str): The folder where reports can be found
        archive_folder (str): The folder to move processed mail to
        delete (bool): Delete messages after processing them
        test (bool): Do not move or delete messages after processing them
        max_report_size (int): The largest decompressed report accepted

    Returns:
        list: The email records
    """
    results = []
    message_ids = connection.fetch_messages(reports_folder)
    logger.debug("Found {0} messages in {1}".format(len(message_ids), reports_folder))
    if not test and not delete and len(message_ids) > 0:
        connection.create_folder(archive_folder)

    for message_id in message_ids:
        msg_content = connection.fetch_message(message_id)
        results.append(
            process_email(msg_content, client=client, max_report_size=max_report_size)
        )
        if test:
            continue
        if delete:
            logger.debug("Deleting message {0}".format(message_id))
            connection.delete_message(message_id)
        else:
            logger.debug(
                "Moving message {0} to {1}".format(message_id, archive_folder)
            )
            connection.move_message(message_id, archive_folder)

    return results


def watch_inbox(
    mailbox_connection: MailboxConnection,
    callback: Callable,
    *,
    client=None,
    reports_folder: str = "INBOX",
    archive_folder: str = "Archive",
    delete: bool = False,
    test: bool = False,
    check_timeout: int = 30,
    max_report_size: int = DEFAULT_MAX_REPORT_SIZE,
):
    """
    Watches the mailbox for new messages and
      sends the results to a callback function

    Args:
        mailbox_connection: The mailbox connection object
        callback: The callback function to receive the email records
        client: A ``WebhookClient`` or ``None``
        reports_folder (str): The folder where reports can be found
        archive_folder (str): The folder to move processed mail to
        delete (bool): Delete  messages after processing them
        test (bool): Do not move or delete messages after processing them
        check_timeout (int): Number of seconds until the next mail check
        max_report_size (int): The largest decompressed report accepted
    """

    def check_callback(connection):
        res = process_mailbox(
            connection,
            client=client,
            reports_folder=reports_folder,
            archive_folder=archive_folder,
            delete=delete,
            test=test,
            max_report_size=max_report_size,
        )
        callback(res)

    mailbox_connection.watch(check_callback=check_callback, check_timeout=check_timeout)


def append_json(filename: str, records: Sequence[Dict[str, Any]]) -> None:
    output_json = to_json(records, indent=2).encode("utf-8")
    # Append mode would force every write to the end of the file
    mode = "r+b" if os.path.exists(filename) else "wb"
    with open(filename, mode) as output:
        end = output.seek(0, os.SEEK_END)
        if end != 0:
            if len(records) == 0:
                # not appending anything, don't do any dance to append it
                # correctly
                return
            output.seek(max(end - 2, 0))
            if output.read(2) == b"\n]":
                # replace the trailing "\n]" with ",\n" and drop the
                # leading "[\n"
                output.seek(end - 2)
                output.write(b",\n")
                output_json = output_json[2:]
            else:
                output.seek(0)
                output.truncate()

        output.write(output_json)


def append_csv(filename: str, csv: str) -> None:
    with open(filename, "a+", newline="\n", encoding="utf-8") as output:
        if output.seek(0, os.SEEK_END) != 0:
            # strip the headers from the CSV
            _headers, csv = csv.split("\n", 1)
            if len(csv) == 0:
                # not appending anything, don't do any dance to
                # append it correctly
                return
        output.write(csv)


def save_output(
    records: Sequence[Dict[str, Any]],
    *,
    output_directory: str = "output",
    json_filename: str = "records.json",
    csv_filename: str = "dmarc.csv",
):
    """
    Save email records in the given directory

    Args:
        records (list): Email records returned by ``process_email``
        output_directory (str): The path to the directory to save in
        json_filename (str): Filename for the JSON file of all records
        csv_filename (str): Filename for the CSV file of DMARC report rows
    """
    if os.path.exists(output_directory):
        if not os.path.isdir(output_directory):
            raise ValueError("{0} is not a directory".format(output_directory))
    else:
        os.makedirs(output_directory)

    append_json(os.path.join(output_directory, json_filename), records)

    rows = []
    for record in records:
        if record["type"] == "dmarc":
            rows += record["records"]
    append_csv(os.path.join(output_directory, csv_filename), dmarc_rows_to_csv(rows))
