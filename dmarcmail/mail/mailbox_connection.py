# -*- coding: utf-8 -*-

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, List, Union


class MailboxConnection(ABC):
    """
    A source of inbound messages that can be archived once processed
    """

    @abstractmethod
    def create_folder(self, folder_name: str):
        """Creates the folder if it does not exist yet"""

    @abstractmethod
    def fetch_messages(self, reports_folder: str, **kwargs) -> List[str]:
        """Returns the ids of the messages waiting in ``reports_folder``"""

    @abstractmethod
    def fetch_message(self, message_id: str) -> Union[bytes, str]:
        """Returns the raw RFC 822 message, or an empty value if it is gone"""

    @abstractmethod
    def delete_message(self, message_id: str):
        pass

    @abstractmethod
    def move_message(self, message_id: str, folder_name: str):
        pass

    @abstractmethod
    def watch(self, check_callback: Callable, check_timeout: int):
        """Calls ``check_callback`` with this connection every
        ``check_timeout`` seconds, forever"""
