import base64
import json

import requests

from dmarcmail.constants import USER_AGENT
from dmarcmail.log import logger
from dmarcmail.utils import to_json


class DeliveryError(RuntimeError):
    """Raised when an email record could not be saved"""


def contains_binary_data(email_data):
    """
    Checks if an email record carries attachment content or report XML

    Args:
        email_data (dict): An email record

    Returns:
        bool: ``True`` if the request body should be base64 encoded
    """
    return bool(
        email_data.get("attachment_content")
        or email_data.get("attachments")
        or email_data.get("raw_xml")
    )


class WebhookClient(object):
    """A client for the email storage webhook"""

    def __init__(self, url, analytics_url=None, timeout=60):
        """
        Initializes the WebhookClient
        Args:
            url (str): The URL email records are saved to
            analytics_url (str): The URL analytics data points are sent to
            timeout (int): The timeout to use when calling the webhooks
        """
        self.url = url
        self.analytics_url = analytics_url
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update(
            {
                "User-Agent": USER_AGENT,
                "Content-Type": "application/json",
            }
        )

    def save_email(self, email_data):
        """
        Saves an email record

        The JSON body is base64 encoded when the record carries binary data,
        which is flagged with the ``X-Is-Base64`` header.

        Args:
            email_data (dict): An email record

        Returns:
            dict: The parsed response
        """
        payload = to_json({"action": "saveEmail", "data": email_data})
        is_base64 = contains_binary_data(email_data)
        if is_base64:
            payload = base64.b64encode(payload.encode("utf-8")).decode("ascii")
        logger.debug(
            "Saving {0} email record ({1} characters, base64: {2})".format(
                email_data["type"], len(payload), is_base64
            )
        )
        headers = {"X-Is-Base64": "true" if is_base64 else "false"}
        response = self._send_to_webhook(self.url, payload, headers=headers)
        try:
            result = response.json()
        except ValueError as error_:
            raise DeliveryError(
                "Webhook returned invalid JSON: {0}".format(response.text)
            ) from error_
        if not isinstance(result, dict) or not result.get("success"):
            error = result.get("error") if isinstance(result, dict) else result
            raise DeliveryError("Webhook returned an error: {0}".format(error))
        logger.info(
            "Saved {0} email record {1}".format(
                email_data["type"], result.get("emailId", "")
            ).rstrip()
        )
        return result

    def save_data_points(self, data_points):
        """
        Sends analytics data points, if an analytics URL is configured

        Args:
            data_points (list): Data points from
                ``report_rows_to_data_points``
        """
        if not self.analytics_url or len(data_points) == 0:
            return
        logger.debug("Sending {0} analytics data points".format(len(data_points)))
        self._send_to_webhook(
            self.analytics_url, json.dumps({"data_points": data_points})
        )

    def _send_to_webhook(self, webhook_url, payload, headers=None):
        try:
            response = self.session.post(
                webhook_url, data=payload, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as error_:
            raise DeliveryError(
                "Webhook Error: {0}".format(error_.__str__())
            ) from error_
        if not response.ok:
            logger.error(
                "Webhook Error: {0} {1}: {2}".format(
                    response.status_code, response.reason, response.text
                )
            )
            raise DeliveryError(
                "Webhook Error: {0} {1}".format(response.status_code, response.reason)
            )
        return response

    def close(self):
        self.session.close()
