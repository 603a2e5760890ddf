from dmarcmail.mail.mailbox_connection import MailboxConnection
from dmarcmail.mail.maildir import MaildirConnection

__all__ = [
    "MailboxConnection",
    "MaildirConnection",
]
