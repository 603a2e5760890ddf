# -*- coding: utf-8 -*-

from __future__ import annotations

import mailbox
from time import sleep
from typing import Dict, List

from dmarcmail.log import logger
from dmarcmail.mail.mailbox_connection import MailboxConnection


class MaildirConnection(MailboxConnection):
    """Reads inbound mail from a local Maildir, such as one an MTA delivers
    the DMARC reporting address into"""

    def __init__(
        self,
        maildir_path: str,
        maildir_create: bool = False,
    ):
        self._maildir_path = maildir_path
        self._maildir_create = maildir_create
        self._client = mailbox.Maildir(maildir_path, create=maildir_create)
        self._subfolder_client: Dict[str, mailbox.Maildir] = {}

    def create_folder(self, folder_name: str):
        if folder_name in self._subfolder_client:
            return
        if folder_name in self._client.list_folders():
            self._subfolder_client[folder_name] = self._client.get_folder(folder_name)
        else:
            self._subfolder_client[folder_name] = self._client.add_folder(folder_name)

    def fetch_messages(self, reports_folder: str, **kwargs) -> List[str]:
        return list(self._client.keys())

    def fetch_message(self, message_id: str) -> bytes:
        msg = self._client.get(message_id)
        if msg is None:
            return b""
        return msg.as_bytes()

    def delete_message(self, message_id: str):
        self._client.remove(message_id)

    def move_message(self, message_id: str, folder_name: str):
        message_data = self._client.get(message_id)
        if message_data is None:
            return
        self.create_folder(folder_name)
        self._subfolder_client[folder_name].add(message_data)
        self._client.remove(message_id)

    def watch(self, check_callback, check_timeout):
        while True:
            try:
                check_callback(self)
            except Exception as e:
                logger.warning("Maildir check error. {0}".format(e))
            sleep(check_timeout)
