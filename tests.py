from __future__ import absolute_import, print_function, unicode_literals

import base64
import csv
import gzip
import json
import mailbox
import os
import shutil
import tempfile
import unittest
import zipfile
import zlib
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from glob import glob
from io import BytesIO, StringIO
from unittest import mock

from lxml import etree

import dmarcmail
import dmarcmail.utils
from dmarcmail.mail import MaildirConnection
from dmarcmail.types import (
    AlignmentType,
    Attachment,
    ContainerKind,
    DispositionType,
    DMARCResultType,
    PolicyOverrideType,
)
from dmarcmail.webhook import DeliveryError, WebhookClient

REPORT_SUBJECT = (
    "Report Domain: example.com Submitter: mail.example.net Report-ID: <abc>"
)


def compare_xml(xml1, xml2):
    parser = etree.XMLParser(remove_blank_text=True)
    tree1 = etree.fromstring(xml1.encode('utf-8'), parser)
    tree2 = etree.fromstring(xml2.encode('utf-8'), parser)
    return etree.tostring(tree1) == etree.tostring(tree2)


def read_sample(path):
    with open(path, encoding="utf-8") as sample_file:
        return sample_file.read()


def zip_bytes(entries):
    buffer = BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for name, content in entries:
            archive.writestr(name, content)
    return buffer.getvalue()


def report_email(payload, subtype, filename, subject=REPORT_SUBJECT):
    message = MIMEMultipart()
    message["From"] = "DMARC Reports <noreply-dmarc-support@example.net>"
    message["To"] = "dmarc@example.com"
    message["Subject"] = subject
    message["Date"] = "Sat, 02 Jan 2021 08:00:00 +0000"
    message.attach(MIMEText("This is an aggregate report.", "plain"))
    attachment = MIMEApplication(payload, subtype)
    attachment.add_header("Content-Disposition", "attachment", filename=filename)
    message.attach(attachment)
    return message.as_bytes()


def webhook_response(body):
    response = mock.Mock(ok=True, status_code=200, reason="OK")
    response.text = json.dumps(body)
    response.json.return_value = body
    return response


def posted_payload(call):
    data = call.kwargs["data"]
    if call.kwargs["headers"]["X-Is-Base64"] == "true":
        data = base64.b64decode(data).decode("utf-8")
    return json.loads(data)


class Test(unittest.TestCase):
    def setUp(self):
        self.single_xml = read_sample("samples/aggregate/single-record.xml")
        self.multiple_xml = read_sample("samples/aggregate/multiple-records.xml")

    def testBase64Decoding(self):
        """Test base64 decoding"""
        # Example from Wikipedia Base64 article
        b64_str = "YW55IGNhcm5hbCBwbGVhcw"
        decoded_str = dmarcmail.utils.decode_base64(b64_str)
        assert decoded_str == b"any carnal pleas"
        wrapped = "YW55IGNh\r\ncm5hbCBw\r\nbGVhcw"
        assert dmarcmail.utils.decode_base64(wrapped) == b"any carnal pleas"

    def testParseInt(self):
        """Test lenient integer parsing"""
        parse_int = dmarcmail.utils.parse_int
        self.assertEqual(parse_int("42"), 42)
        self.assertEqual(parse_int(" 42 "), 42)
        self.assertEqual(parse_int("42abc"), 42)
        self.assertEqual(parse_int("1.9"), 1)
        self.assertEqual(parse_int("-3"), -3)
        self.assertEqual(parse_int("abc"), 0)
        self.assertEqual(parse_int(""), 0)
        self.assertEqual(parse_int(None), 0)

    def testResolveContainerKind(self):
        """Test mapping MIME types to containers"""
        resolve = dmarcmail.resolve_container_kind
        self.assertEqual(resolve("application/gzip"), ContainerKind.GZIP)
        self.assertEqual(resolve("application/x-gzip"), ContainerKind.GZIP)
        self.assertEqual(resolve("application/zip"), ContainerKind.ZIP)
        self.assertEqual(resolve("application/x-zip-compressed"), ContainerKind.ZIP)
        self.assertEqual(resolve("text/xml"), ContainerKind.PLAIN_XML)
        self.assertEqual(resolve("application/xml"), ContainerKind.PLAIN_XML)
        self.assertEqual(resolve("Application/GZIP; name=r.xml.gz"), ContainerKind.GZIP)
        for mime_type in ["text/plain", "application/pdf", "image/png",
                          "application/x-no-such-type", "", None]:
            self.assertEqual(resolve(mime_type), ContainerKind.UNSUPPORTED)

    def testExtractReportGZip(self):
        """Test extract report function for gzip input"""
        content = gzip.compress(self.single_xml.encode("utf-8"))
        xml = dmarcmail.extract_report(content, ContainerKind.GZIP)
        self.assertEqual(xml, self.single_xml)

        content = zlib.compress(self.single_xml.encode("utf-8"))
        xml = dmarcmail.extract_report(content, ContainerKind.GZIP)
        self.assertEqual(xml, self.single_xml)

    def testExtractReportCorruptGZip(self):
        """Test corrupt and truncated gzip input"""
        with self.assertRaises(dmarcmail.CorruptArchive):
            dmarcmail.extract_report(b"not gzip at all", ContainerKind.GZIP)
        truncated = gzip.compress(self.single_xml.encode("utf-8"))[:-12]
        with self.assertRaises(dmarcmail.DecodeError):
            dmarcmail.extract_report(truncated, ContainerKind.GZIP)
        with self.assertRaises(dmarcmail.DecodeError):
            dmarcmail.extract_report(b"", ContainerKind.GZIP)

    def testExtractReportMultiMemberGZip(self):
        """Test gzip input with several members"""
        data = self.multiple_xml.encode("utf-8")
        middle = len(data) // 2
        content = gzip.compress(data[:middle]) + gzip.compress(data[middle:])
        xml = dmarcmail.extract_report(content, ContainerKind.GZIP)
        self.assertEqual(xml, self.multiple_xml)
        xml = dmarcmail.extract_report(content + b"\x00" * 8, ContainerKind.GZIP)
        self.assertEqual(xml, self.multiple_xml)
        with self.assertRaises(dmarcmail.ReportTooLarge):
            dmarcmail.extract_report(
                content, ContainerKind.GZIP, max_size=len(data) - 1
            )
        with self.assertRaises(dmarcmail.CorruptArchive):
            dmarcmail.extract_report(content + b"junk", ContainerKind.GZIP)

    def testExtractReportZip(self):
        """Test extract report function for zip input"""
        content = zip_bytes([("report.xml", self.single_xml)])
        xml = dmarcmail.extract_report(content, ContainerKind.ZIP)
        self.assertEqual(xml, self.single_xml)
        self.assertTrue(compare_xml(xml, self.single_xml))
        self.assertFalse(compare_xml(xml, self.multiple_xml))

    def testExtractReportZipUsesFirstEntry(self):
        """Test that only the first zip entry is read"""
        content = zip_bytes(
            [("first.xml", self.multiple_xml), ("second.xml", self.single_xml)]
        )
        xml = dmarcmail.extract_report(content, ContainerKind.ZIP)
        self.assertEqual(xml, self.multiple_xml)

    def testExtractReportEmptyZip(self):
        """Test a zip archive without entries"""
        content = zip_bytes([])
        with self.assertRaises(dmarcmail.EmptyArchive):
            dmarcmail.extract_report(content, ContainerKind.ZIP)
        with self.assertRaises(dmarcmail.CorruptArchive):
            dmarcmail.extract_report(b"PK\x03\x04garbage", ContainerKind.ZIP)

    def testExtractReportXML(self):
        """Test extract report function for XML input"""
        xml = dmarcmail.extract_report(
            self.single_xml.encode("utf-8"), ContainerKind.PLAIN_XML
        )
        self.assertEqual(xml, self.single_xml)

    def testExtractReportUnsupported(self):
        """Test that unsupported containers are rejected"""
        with self.assertRaises(dmarcmail.UnsupportedContainer):
            dmarcmail.extract_report(b"hello", ContainerKind.UNSUPPORTED)

    def testExtractReportSizeLimit(self):
        """Test the decompressed size limit"""
        bomb = gzip.compress(b"<" + b" " * 100000 + b"/>")
        with self.assertRaises(dmarcmail.ReportTooLarge):
            dmarcmail.extract_report(bomb, ContainerKind.GZIP, max_size=1000)
        content = zip_bytes([("report.xml", "<a>" + " " * 100000 + "</a>")])
        with self.assertRaises(dmarcmail.ReportTooLarge):
            dmarcmail.extract_report(content, ContainerKind.ZIP, max_size=1000)
        with self.assertRaises(dmarcmail.ReportTooLarge):
            dmarcmail.extract_report(
                self.single_xml.encode("utf-8"), ContainerKind.PLAIN_XML, max_size=10
            )

    def testParseReportXML(self):
        """Test report shape validation"""
        report = dmarcmail.parse_report_xml(self.single_xml)
        # A single record is parsed as a mapping, not a list
        self.assertIsInstance(report["feedback"]["record"], dict)
        report = dmarcmail.parse_report_xml(self.multiple_xml)
        self.assertIsInstance(report["feedback"]["record"], list)

        with self.assertRaises(dmarcmail.MalformedReport):
            dmarcmail.parse_report_xml(read_sample("samples/invalid/malformed.xml"))
        with self.assertRaises(dmarcmail.MalformedReport):
            dmarcmail.parse_report_xml("")
        with self.assertRaises(dmarcmail.InvalidShape):
            dmarcmail.parse_report_xml(read_sample("samples/invalid/no-records.xml"))
        with self.assertRaises(dmarcmail.InvalidShape):
            dmarcmail.parse_report_xml("<root><record/></root>")

    def testSingleRecordReport(self):
        """Test flattening a report with one record"""
        rows = dmarcmail.get_report_rows(dmarcmail.parse_report_xml(self.single_xml))
        self.assertEqual(len(rows), 1)
        row = rows[0]
        self.assertEqual(row.report_metadata_report_id, "2021_01-01-1")
        self.assertEqual(row.report_metadata_org_name, "example.net")
        self.assertEqual(row.report_metadata_date_range_begin, 1609459200)
        self.assertEqual(row.report_metadata_date_range_end, 1609545599)
        self.assertEqual(row.report_metadata_error, "")
        self.assertEqual(row.policy_published_domain, "example.com")
        self.assertEqual(row.policy_published_adkim, AlignmentType.R)
        self.assertEqual(row.policy_published_p, DispositionType.NONE)
        self.assertEqual(row.policy_published_pct, 100)
        self.assertEqual(row.record_row_source_ip, "203.0.113.5")
        self.assertEqual(row.record_row_count, 2)
        self.assertEqual(row.record_row_policy_evaluated_dkim, DMARCResultType.PASS)
        self.assertEqual(row.record_row_policy_evaluated_spf, DMARCResultType.FAIL)
        self.assertEqual(
            row.record_row_policy_evaluated_disposition, DispositionType.NONE
        )
        self.assertEqual(
            row.record_row_policy_evaluated_reason_type, PolicyOverrideType.UNKNOWN
        )
        self.assertEqual(row.record_identifiers_envelope_to, "")
        self.assertEqual(row.record_identifiers_header_from, "example.com")

    def testMultipleRecordReport(self):
        """Test flattening a report with several records"""
        report = dmarcmail.parse_report_xml(self.multiple_xml)
        rows = dmarcmail.get_report_rows(report)
        self.assertEqual(len(rows), 3)
        self.assertEqual(
            [row.record_row_source_ip for row in rows],
            ["198.51.100.1", "198.51.100.2", "2001:db8::1"],
        )
        shared = [field for field in rows[0]._fields
                  if field.startswith(("report_metadata", "policy_published"))]
        for row in rows[1:]:
            for field in shared:
                self.assertEqual(getattr(row, field), getattr(rows[0], field))

        first, second, third = rows
        self.assertEqual(first.report_metadata_report_id, "a1b2_c3d4-e5f6")
        self.assertEqual(
            json.loads(first.report_metadata_error),
            ["Unknown tag in policy", "Duplicate record"],
        )
        self.assertEqual(first.policy_published_adkim, AlignmentType.S)
        self.assertEqual(first.policy_published_sp, DispositionType.REJECT)
        self.assertEqual(first.policy_published_pct, 50)
        self.assertEqual(first.record_identifiers_envelope_to, "receiver.example")
        self.assertEqual(
            second.record_row_policy_evaluated_reason_type,
            PolicyOverrideType.LOCAL_POLICY,
        )
        self.assertEqual(
            second.record_row_policy_evaluated_disposition,
            DispositionType.QUARANTINE,
        )
        # Unknown labels resolve to the sentinel instead of raising
        self.assertEqual(
            third.record_row_policy_evaluated_disposition, DispositionType.UNKNOWN
        )
        self.assertEqual(
            third.record_row_policy_evaluated_dkim, DMARCResultType.UNKNOWN
        )
        self.assertEqual(
            third.record_row_policy_evaluated_reason_type,
            PolicyOverrideType.FORWARDED,
        )
        self.assertEqual(third.record_row_count, 0)

    def testMissingRecordField(self):
        """Test a record missing its identifiers"""
        report = dmarcmail.parse_report_xml(
            read_sample("samples/invalid/missing-identifiers.xml")
        )
        with self.assertRaises(dmarcmail.MissingField) as context:
            dmarcmail.get_report_rows(report)
        self.assertEqual(context.exception.field_path, "feedback.record[1].identifiers")

    def testEnumLabels(self):
        """Test enum label lookups"""
        self.assertEqual(AlignmentType.from_label("relaxed"), AlignmentType.R)
        self.assertEqual(AlignmentType.from_label("R"), AlignmentType.UNKNOWN)
        self.assertEqual(DispositionType.from_label(None), DispositionType.UNKNOWN)
        self.assertEqual(
            PolicyOverrideType.from_label("sampled_out"),
            PolicyOverrideType.SAMPLED_OUT,
        )
        self.assertEqual(DMARCResultType.from_label({"#text": "pass"}),
                         DMARCResultType.UNKNOWN)

    def testIsDmarcCandidate(self):
        """Test DMARC report email classification"""
        xml_attachment = Attachment("text/xml", "report.xml", b"<feedback/>")
        text_attachment = Attachment("text/plain", "notes.txt", b"hello")
        self.assertFalse(dmarcmail.is_dmarc_candidate(REPORT_SUBJECT, []))
        self.assertFalse(
            dmarcmail.is_dmarc_candidate("Lunch on Friday?", [xml_attachment])
        )
        self.assertFalse(
            dmarcmail.is_dmarc_candidate(REPORT_SUBJECT, [text_attachment])
        )
        # Only the first attachment is considered
        self.assertFalse(
            dmarcmail.is_dmarc_candidate(
                REPORT_SUBJECT, [text_attachment, xml_attachment]
            )
        )
        self.assertTrue(dmarcmail.is_dmarc_candidate(REPORT_SUBJECT, [xml_attachment]))
        self.assertTrue(
            dmarcmail.is_dmarc_candidate("DMARC Aggregate Report", [xml_attachment])
        )
        self.assertFalse(dmarcmail.is_dmarc_candidate(None, [xml_attachment]))

    def testProcessXMLReportEmail(self):
        """Test processing a report email with an XML attachment"""
        with open("samples/emails/xml-report.eml", "rb") as sample_file:
            record = dmarcmail.process_email(sample_file.read())
        self.assertEqual(record["type"], "dmarc")
        self.assertEqual(
            record["from"], "DMARC Reports <noreply-dmarc-support@example.net>"
        )
        self.assertEqual(record["to"], "dmarc@example.com")
        self.assertEqual(record["subject"], REPORT_SUBJECT)
        self.assertEqual(record["report_id"], "2021-01-01-1")
        self.assertEqual(record["org_name"], "example.net")
        self.assertEqual(record["domain"], "example.com")
        self.assertEqual(record["date_range"]["begin"], "2021-01-01T00:00:00+00:00")
        self.assertEqual(len(record["records"]), 1)
        self.assertEqual(
            record["records"][0]["report_metadata_report_id"], "2021_01-01-1"
        )
        self.assertEqual(record["records"][0]["record_row_policy_evaluated_dkim"], 1)
        self.assertTrue(compare_xml(record["raw_xml"].strip(), self.single_xml))

    def testProcessCompressedReportEmails(self):
        """Test processing report emails with gzip and zip attachments"""
        samples = [
            (gzip.compress(self.multiple_xml.encode("utf-8")), "gzip", "r.xml.gz"),
            (zip_bytes([("r.xml", self.multiple_xml)]), "zip", "r.zip"),
        ]
        for payload, subtype, filename in samples:
            record = dmarcmail.process_email(
                report_email(payload, subtype, filename)
            )
            self.assertEqual(record["type"], "dmarc")
            self.assertEqual(record["attachment_name"], filename)
            self.assertEqual(record["attachment_mime_type"], "application/" + subtype)
            self.assertEqual(base64.b64decode(record["attachment_content"]), payload)
            self.assertEqual(len(record["records"]), 3)
            self.assertEqual(record["raw_xml"], self.multiple_xml)
            self.assertEqual(record["policy_published"]["p"], 1)

    def testProcessFoldedSubject(self):
        """Test a report email whose headers are folded over several lines"""
        with open("samples/emails/xml-report.eml", "rb") as sample_file:
            raw = sample_file.read()
        raw = raw.replace(b"Subject: Report Domain:", b"Subject: Report\n Domain:")
        raw = raw.replace(b"From: DMARC Reports", b"From: DMARC\n Reports")
        record = dmarcmail.process_email(raw)
        self.assertEqual(record["type"], "dmarc")
        self.assertEqual(record["subject"], REPORT_SUBJECT)
        self.assertEqual(
            record["from"], "DMARC Reports <noreply-dmarc-support@example.net>"
        )

        # email.mime folds subjects longer than 78 characters
        subject = REPORT_SUBJECT + " Submitted-By: a-long-reporter-name.example.net"
        raw = report_email(self.single_xml.encode("utf-8"), "xml", "r.xml",
                           subject=subject)
        record = dmarcmail.process_email(raw)
        self.assertEqual(record["type"], "dmarc")
        self.assertEqual(record["subject"], subject)

    def testProcessOutOfRangeDateRange(self):
        """Test a report with a date range outside the datetime range"""
        xml = self.single_xml.replace(
            "<begin>1609459200</begin>", "<begin>1609459200000</begin>"
        )
        record = dmarcmail.process_email(
            report_email(xml.encode("utf-8"), "xml", "r.xml")
        )
        self.assertEqual(record["type"], "dmarc")
        self.assertEqual(record["date_range"]["begin"], "")
        self.assertEqual(record["date_range"]["end"], "2021-01-01T23:59:59+00:00")
        self.assertEqual(
            record["records"][0]["report_metadata_date_range_begin"], 1609459200000
        )
        self.assertEqual(dmarcmail.utils.timestamp_to_iso(10 ** 20), "")

    def testProcessRegularEmail(self):
        """Test processing an email that is not a report"""
        with open("samples/emails/regular.eml", "rb") as sample_file:
            record = dmarcmail.process_email(sample_file.read())
        self.assertEqual(record["type"], "regular")
        self.assertEqual(record["from"], "Alice Example <alice@example.com>")
        self.assertEqual(
            record["to"], "Bob Example <bob@example.org>, carol@example.org"
        )
        self.assertEqual(record["cc"], "dave@example.org")
        self.assertIn("lunch", record["text"])
        self.assertIn("lunch-1@example.com", record["message_id"])
        self.assertEqual(record["attachments"], [])

    def testProcessRegularEmailAttachments(self):
        """Test attachment metadata of a non-report email"""
        raw = report_email(b"%PDF-1.4", "pdf", "invoice.pdf", subject="Invoice")
        record = dmarcmail.process_email(raw)
        self.assertEqual(record["type"], "regular")
        self.assertEqual(len(record["attachments"]), 1)
        attachment = record["attachments"][0]
        self.assertEqual(attachment["filename"], "invoice.pdf")
        self.assertEqual(attachment["mime_type"], "application/pdf")
        self.assertEqual(attachment["size"], 8)
        self.assertEqual(base64.b64decode(attachment["content"]), b"%PDF-1.4")

    def testProcessBrokenReportEmail(self):
        """Test that a failing report becomes an error record"""
        samples = [
            (b"corrupt", "gzip", "r.xml.gz"),
            (zip_bytes([]), "zip", "r.zip"),
            (read_sample("samples/invalid/malformed.xml").encode(), "xml", "r.xml"),
            (read_sample("samples/invalid/missing-identifiers.xml").encode(),
             "xml", "r.xml"),
        ]
        for payload, subtype, filename in samples:
            record = dmarcmail.process_email(report_email(payload, subtype, filename))
            self.assertEqual(record["type"], "error")
            self.assertEqual(record["subject"], REPORT_SUBJECT)
            self.assertTrue(record["error_message"])
            raw_email = json.loads(record["raw_email"])
            self.assertEqual(raw_email["subject"], REPORT_SUBJECT)

    def testProcessEmptyEmail(self):
        """Test empty and unreadable messages"""
        record = dmarcmail.process_email(None)
        self.assertEqual(record["type"], "deleted")
        self.assertEqual(record["delete_type"], "message_null")
        record = dmarcmail.process_email(b"")
        self.assertEqual(record["delete_type"], "raw_empty")
        record = dmarcmail.process_email(b"X-Nothing: here\n\nno headers")
        self.assertEqual(record["delete_type"], "content_incomplete")

    def testWebhookClient(self):
        """Test saving email records to the webhook"""
        client = WebhookClient("https://storage.example/save", timeout=5)
        client.session.post = mock.Mock(
            return_value=webhook_response({"success": True, "emailId": "1"})
        )
        with open("samples/emails/xml-report.eml", "rb") as sample_file:
            record = dmarcmail.process_email(sample_file.read(), client=client)
        self.assertEqual(record["type"], "dmarc")
        self.assertEqual(client.session.post.call_count, 1)
        call = client.session.post.call_args
        self.assertEqual(call.args[0], "https://storage.example/save")
        self.assertEqual(call.kwargs["headers"]["X-Is-Base64"], "true")
        self.assertEqual(call.kwargs["timeout"], 5)
        payload = posted_payload(call)
        self.assertEqual(payload["action"], "saveEmail")
        self.assertEqual(payload["data"]["report_id"], "2021-01-01-1")

        client.session.post.reset_mock()
        with open("samples/emails/regular.eml", "rb") as sample_file:
            dmarcmail.process_email(sample_file.read(), client=client)
        call = client.session.post.call_args
        self.assertEqual(call.kwargs["headers"]["X-Is-Base64"], "false")
        self.assertEqual(posted_payload(call)["data"]["type"], "regular")

    def testWebhookClientErrors(self):
        """Test webhook failures"""
        client = WebhookClient("https://storage.example/save")
        client.session.post = mock.Mock(
            return_value=webhook_response({"success": False, "error": "full"})
        )
        with self.assertRaises(DeliveryError):
            client.save_email({"type": "regular", "attachments": []})

        response = mock.Mock(ok=False, status_code=500, reason="Server Error",
                             text="oops")
        client.session.post = mock.Mock(return_value=response)
        with self.assertRaises(DeliveryError):
            client.save_email({"type": "regular", "attachments": []})

        response = mock.Mock(ok=True, status_code=200, reason="OK", text="<html>")
        response.json.side_effect = ValueError("not JSON")
        client.session.post = mock.Mock(return_value=response)
        with self.assertRaises(DeliveryError):
            client.save_email({"type": "regular", "attachments": []})

    def testDeliveryFailureFallsBack(self):
        """Test that a failed delivery is recorded as an error and never
        raised"""
        client = WebhookClient("https://storage.example/save")
        client.session.post = mock.Mock(
            return_value=webhook_response({"success": False, "error": "full"})
        )
        with open("samples/emails/xml-report.eml", "rb") as sample_file:
            record = dmarcmail.process_email(sample_file.read(), client=client)
        self.assertEqual(record["type"], "error")
        self.assertIn("full", record["error_message"])
        self.assertEqual(client.session.post.call_count, 2)
        fallback = posted_payload(client.session.post.call_args)
        self.assertEqual(fallback["data"]["type"], "error")

    def testDataPoints(self):
        """Test analytics data points"""
        rows = dmarcmail.get_report_rows(
            dmarcmail.parse_report_xml(self.multiple_xml)
        )
        points = dmarcmail.report_rows_to_data_points(rows)
        self.assertEqual(len(points), 3)
        self.assertEqual(points[2]["indexes"], ["a1b2_c3d4-e5f6-2"])
        self.assertEqual(len(points[0]["blobs"]), 7)
        self.assertEqual(len(points[0]["doubles"]), 12)
        self.assertEqual(points[0]["blobs"][4], "198.51.100.1")
        self.assertEqual(points[1]["doubles"][7], 3.0)

        long_id = rows[0]._replace(report_metadata_report_id="x" * 40)
        point = dmarcmail.report_rows_to_data_points([long_id])[0]
        self.assertEqual(len(point["indexes"][0]), 32)

        client = WebhookClient("https://storage.example/save",
                               analytics_url="https://analytics.example/write")
        client.session.post = mock.Mock(return_value=webhook_response({}))
        client.save_data_points(points)
        call = client.session.post.call_args
        self.assertEqual(call.args[0], "https://analytics.example/write")
        self.assertEqual(len(json.loads(call.kwargs["data"])["data_points"]), 3)

    def testCSVOutput(self):
        """Test flat CSV output of report rows"""
        rows = dmarcmail.get_report_rows(
            dmarcmail.parse_report_xml(self.multiple_xml)
        )
        csv_text = dmarcmail.dmarc_rows_to_csv(rows)
        reader = csv.DictReader(StringIO(csv_text))
        self.assertEqual(reader.fieldnames, dmarcmail.DMARC_CSV_FIELDS)
        csv_rows = list(reader)
        self.assertEqual(len(csv_rows), 3)
        self.assertEqual(csv_rows[0]["record_row_policy_evaluated_dkim"], "1")
        self.assertEqual(csv_rows[1]["record_row_source_ip"], "198.51.100.2")

    def testSaveOutput(self):
        """Test saving records to an output directory"""
        output_directory = tempfile.mkdtemp()
        try:
            records = []
            for sample_path in sorted(glob("samples/emails/*.eml")):
                with open(sample_path, "rb") as sample_file:
                    records.append(dmarcmail.process_email(sample_file.read()))
            dmarcmail.save_output(records, output_directory=output_directory)
            dmarcmail.save_output(records, output_directory=output_directory)
            with open(os.path.join(output_directory, "records.json")) as f:
                self.assertEqual(len(json.load(f)), 4)
            with open(os.path.join(output_directory, "dmarc.csv")) as f:
                self.assertEqual(len(list(csv.DictReader(f))), 2)
        finally:
            shutil.rmtree(output_directory)

    def testAppendJSON(self):
        """Test appending records to an existing JSON file"""
        output_directory = tempfile.mkdtemp()
        try:
            filename = os.path.join(output_directory, "records.json")
            dmarcmail.append_json(filename, [])
            dmarcmail.append_json(filename, [{"a": 1}])
            dmarcmail.append_json(filename, [{"b": 2}, {"c": "é"}])
            dmarcmail.append_json(filename, [])
            with open(filename, encoding="utf-8") as f:
                self.assertEqual(json.load(f), [{"a": 1}, {"b": 2}, {"c": "é"}])
        finally:
            shutil.rmtree(output_directory)

    def testMaildir(self):
        """Test processing and archiving a Maildir"""
        maildir_path = os.path.join(tempfile.mkdtemp(), "mail")
        try:
            maildir = mailbox.Maildir(maildir_path, create=True)
            for sample_path in glob("samples/emails/*.eml"):
                with open(sample_path, "rb") as sample_file:
                    maildir.add(sample_file.read())
            connection = MaildirConnection(maildir_path)
            records = dmarcmail.process_mailbox(connection)
            self.assertEqual(
                sorted(record["type"] for record in records), ["dmarc", "regular"]
            )
            self.assertEqual(connection.fetch_messages("INBOX"), [])
            self.assertEqual(len(maildir.get_folder("Archive")), 2)
        finally:
            shutil.rmtree(os.path.dirname(maildir_path))


if __name__ == "__main__":
    unittest.main(verbosity=2)
