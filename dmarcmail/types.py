from __future__ import annotations

from enum import Enum, IntEnum
from typing import Any, Dict, List, Literal, NamedTuple, Optional, TypedDict

# Keep to Python 3.8 typing: no PEP 604 unions and no NotRequired.


class ContainerKind(Enum):
    """The container a DMARC aggregate report attachment is shipped in"""

    GZIP = "gz"
    ZIP = "zip"
    PLAIN_XML = "xml"
    UNSUPPORTED = "unsupported"


def _lookup(labels: Dict[str, Any], label: Any, unknown: Any) -> Any:
    if not isinstance(label, str):
        return unknown
    return labels.get(label, unknown)


class AlignmentType(IntEnum):
    R = 0
    S = 1
    UNKNOWN = 2

    @classmethod
    def from_label(cls, label: Any) -> "AlignmentType":
        return _lookup(_ALIGNMENT_LABELS, label, cls.UNKNOWN)


class DispositionType(IntEnum):
    NONE = 0
    QUARANTINE = 1
    REJECT = 2
    UNKNOWN = 3

    @classmethod
    def from_label(cls, label: Any) -> "DispositionType":
        return _lookup(_DISPOSITION_LABELS, label, cls.UNKNOWN)


class DMARCResultType(IntEnum):
    FAIL = 0
    PASS = 1
    UNKNOWN = 2

    @classmethod
    def from_label(cls, label: Any) -> "DMARCResultType":
        return _lookup(_DMARC_RESULT_LABELS, label, cls.UNKNOWN)


class PolicyOverrideType(IntEnum):
    OTHER = 0
    FORWARDED = 1
    SAMPLED_OUT = 2
    TRUSTED_FORWARDER = 3
    MAILING_LIST = 4
    LOCAL_POLICY = 5
    UNKNOWN = 6

    @classmethod
    def from_label(cls, label: Any) -> "PolicyOverrideType":
        return _lookup(_POLICY_OVERRIDE_LABELS, label, cls.UNKNOWN)


# Textual labels as they appear in aggregate report XML
_ALIGNMENT_LABELS = {
    "r": AlignmentType.R,
    "s": AlignmentType.S,
    "relaxed": AlignmentType.R,
    "strict": AlignmentType.S,
}

_DISPOSITION_LABELS = {
    "none": DispositionType.NONE,
    "quarantine": DispositionType.QUARANTINE,
    "reject": DispositionType.REJECT,
}

_DMARC_RESULT_LABELS = {
    "fail": DMARCResultType.FAIL,
    "pass": DMARCResultType.PASS,
}

_POLICY_OVERRIDE_LABELS = {
    "other": PolicyOverrideType.OTHER,
    "forwarded": PolicyOverrideType.FORWARDED,
    "sampled_out": PolicyOverrideType.SAMPLED_OUT,
    "trusted_forwarder": PolicyOverrideType.TRUSTED_FORWARDER,
    "mailing_list": PolicyOverrideType.MAILING_LIST,
    "local_policy": PolicyOverrideType.LOCAL_POLICY,
}


def _plain(value: Any) -> Any:
    if isinstance(value, IntEnum):
        return int(value)
    return value


class Attachment(NamedTuple):
    mime_type: str
    filename: str
    content: bytes


class ReportMetadata(NamedTuple):
    report_id: str
    org_name: str
    date_range_begin: int
    date_range_end: int
    errors: str

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._asdict())


class PolicyPublished(NamedTuple):
    domain: str
    adkim: AlignmentType
    aspf: AlignmentType
    p: DispositionType
    sp: DispositionType
    pct: int

    def to_dict(self) -> Dict[str, Any]:
        return {k: _plain(v) for k, v in self._asdict().items()}


class DmarcRecordRow(NamedTuple):
    """One aggregate report record, denormalized with its report's metadata
    and published policy"""

    report_metadata_report_id: str
    report_metadata_org_name: str
    report_metadata_date_range_begin: int
    report_metadata_date_range_end: int
    report_metadata_error: str

    policy_published_domain: str
    policy_published_adkim: AlignmentType
    policy_published_aspf: AlignmentType
    policy_published_p: DispositionType
    policy_published_sp: DispositionType
    policy_published_pct: int

    record_row_source_ip: str
    record_row_count: int
    record_row_policy_evaluated_dkim: DMARCResultType
    record_row_policy_evaluated_spf: DMARCResultType
    record_row_policy_evaluated_disposition: DispositionType
    record_row_policy_evaluated_reason_type: PolicyOverrideType
    record_identifiers_envelope_to: str
    record_identifiers_header_from: str

    def to_dict(self) -> Dict[str, Any]:
        return {k: _plain(v) for k, v in self._asdict().items()}


class DateRange(TypedDict):
    begin: str
    end: str


class AttachmentData(TypedDict):
    filename: Optional[str]
    mime_type: str
    size: int
    content: str


class AnalyticsDataPoint(TypedDict):
    blobs: List[str]
    doubles: List[float]
    indexes: List[str]


DmarcEmailData = TypedDict(
    "DmarcEmailData",
    {
        "type": Literal["dmarc"],
        "from": str,
        "to": str,
        "subject": str,
        "date": str,
        "report_id": str,
        "org_name": str,
        "domain": str,
        "date_range": DateRange,
        "report_metadata": Dict[str, Any],
        "policy_published": Dict[str, Any],
        "records": List[Dict[str, Any]],
        "raw_xml": str,
        "attachment_name": Optional[str],
        "attachment_content": str,
        "attachment_mime_type": str,
    },
)

RegularEmailData = TypedDict(
    "RegularEmailData",
    {
        "type": Literal["regular"],
        "from": str,
        "to": str,
        "cc": str,
        "bcc": str,
        "subject": str,
        "text": str,
        "html": str,
        "date": str,
        "message_id": str,
        "attachments": List[AttachmentData],
    },
)

ErrorEmailData = TypedDict(
    "ErrorEmailData",
    {
        "type": Literal["error"],
        "from": str,
        "to": str,
        "subject": str,
        "date": str,
        "error_message": str,
        "raw_email": str,
    },
)

DeletedEmailData = TypedDict(
    "DeletedEmailData",
    {
        "type": Literal["deleted"],
        "from": str,
        "to": str,
        "subject": str,
        "date": str,
        "error_message": str,
        "delete_type": str,
        "deleted_at": str,
        "raw_email": str,
    },
)


class EmailAddress(TypedDict):
    display_name: Optional[str]
    address: str
    local: Optional[str]
    domain: Optional[str]


ParsedEmail = TypedDict(
    "ParsedEmail",
    {
        # A lightly-specified version of the mailparser JSON, limited to
        # the fields dmarcmail routes on and forwards.
        "headers": Dict[str, Any],
        "subject": Optional[str],
        "date": Optional[str],
        "message_id": Optional[str],
        "from": Optional[EmailAddress],
        "to": List[EmailAddress],
        "cc": List[EmailAddress],
        "bcc": List[EmailAddress],
        "text": str,
        "html": str,
        "attachments": List[Dict[str, Any]],
    },
    total=False,
)
