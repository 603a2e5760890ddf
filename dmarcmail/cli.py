#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""A CLI for processing inbound DMARC report emails"""

from argparse import Namespace, ArgumentParser
import os
from configparser import ConfigParser
from glob import glob
import logging
import sys

from tqdm import tqdm

from dmarcmail import (
    process_email,
    save_output,
    watch_inbox,
    process_mailbox,
    __version__,
)
from dmarcmail.constants import DEFAULT_MAX_REPORT_SIZE
from dmarcmail.log import logger
from dmarcmail.mail import MaildirConnection
from dmarcmail.utils import to_json
from dmarcmail.webhook import WebhookClient

formatter = logging.Formatter(
    fmt="%(levelname)8s:%(filename)s:%(lineno)d:%(message)s",
    datefmt="%Y-%m-%d:%H:%M:%S",
)
handler = logging.StreamHandler()
handler.setFormatter(formatter)
logger.addHandler(handler)

WEBHOOK_URL_ENV_VAR = "DMARCMAIL_WEBHOOK_URL"


def _load_config(opts, config_file):
    """Overrides the given options with the settings of a config file"""
    config = ConfigParser()
    config.read(config_file)
    if "general" in config.sections():
        general_config = config["general"]
        if "silent" in general_config:
            opts.silent = general_config.getboolean("silent")
        if "warnings" in general_config:
            opts.warnings = general_config.getboolean("warnings")
        if "verbose" in general_config:
            opts.verbose = general_config.getboolean("verbose")
        if "debug" in general_config:
            opts.debug = general_config.getboolean("debug")
        if "log_file" in general_config:
            opts.log_file = general_config["log_file"]
        if "output" in general_config:
            opts.output = general_config["output"]
        if "max_report_size" in general_config:
            opts.max_report_size = general_config.getint("max_report_size")

    if "webhook" in config.sections():
        webhook_config = config["webhook"]
        if "url" in webhook_config:
            opts.webhook_url = webhook_config["url"]
        if "analytics_url" in webhook_config:
            opts.webhook_analytics_url = webhook_config["analytics_url"]
        if "timeout" in webhook_config:
            opts.webhook_timeout = webhook_config.getfloat("timeout")

    if "maildir" in config.sections():
        maildir_config = config["maildir"]
        if "path" in maildir_config:
            opts.maildir_path = maildir_config["path"]
        if "create" in maildir_config:
            opts.maildir_create = maildir_config.getboolean("create")
        if "archive_folder" in maildir_config:
            opts.maildir_archive_folder = maildir_config["archive_folder"]
        if "delete" in maildir_config:
            opts.maildir_delete = maildir_config.getboolean("delete")
        if "test" in maildir_config:
            opts.maildir_test = maildir_config.getboolean("test")
        if "watch" in maildir_config:
            opts.maildir_watch = maildir_config.getboolean("watch")
        if "check_timeout" in maildir_config:
            opts.maildir_check_timeout = maildir_config.getint("check_timeout")

    return opts


def _main():
    """Called when the module is executed"""

    def process_records(records_):
        if not opts.silent:
            print(to_json(records_, indent=2))
        if opts.output:
            save_output(records_, output_directory=opts.output)

    arg_parser = ArgumentParser(description="Processes inbound DMARC report emails")
    arg_parser.add_argument(
        "-c",
        "--config-file",
        help="a path to a configuration file (--silent implied)",
    )
    arg_parser.add_argument(
        "file_path",
        nargs="*",
        help="one or more paths to RFC 822 email files",
    )
    arg_parser.add_argument(
        "-o", "--output", help="write output files to the given directory"
    )
    arg_parser.add_argument(
        "--webhook-url",
        help="save email records to this URL (default: ${0})".format(
            WEBHOOK_URL_ENV_VAR
        ),
    )
    arg_parser.add_argument(
        "--analytics-url", help="send report rows as analytics data points here"
    )
    arg_parser.add_argument(
        "--webhook-timeout",
        help="number of seconds to wait for the webhook (default: 60)",
        type=float,
        default=60,
    )
    arg_parser.add_argument("--maildir", help="process the mail in this Maildir")
    arg_parser.add_argument(
        "--watch",
        action="store_true",
        help="keep watching the Maildir for new mail",
    )
    arg_parser.add_argument(
        "--max-report-size",
        help="largest decompressed report accepted, in bytes "
        "(default: {0})".format(DEFAULT_MAX_REPORT_SIZE),
        type=int,
        default=DEFAULT_MAX_REPORT_SIZE,
    )
    arg_parser.add_argument(
        "-s", "--silent", action="store_true", help="only print errors"
    )
    arg_parser.add_argument(
        "-w",
        "--warnings",
        action="store_true",
        help="print warnings in addition to errors",
    )
    arg_parser.add_argument(
        "--verbose", action="store_true", help="more verbose output"
    )
    arg_parser.add_argument(
        "--debug", action="store_true", help="print debugging information"
    )
    arg_parser.add_argument("--log-file", default=None, help="output logging to a file")
    arg_parser.add_argument("-v", "--version", action="version", version=__version__)

    args = arg_parser.parse_args()

    opts = Namespace(
        file_path=args.file_path,
        config_file=args.config_file,
        output=args.output,
        silent=args.silent,
        warnings=args.warnings,
        verbose=args.verbose,
        debug=args.debug,
        log_file=args.log_file,
        max_report_size=args.max_report_size,
        webhook_url=args.webhook_url,
        webhook_analytics_url=args.analytics_url,
        webhook_timeout=args.webhook_timeout,
        maildir_path=args.maildir,
        maildir_create=False,
        maildir_archive_folder="Archive",
        maildir_delete=False,
        maildir_test=False,
        maildir_watch=args.watch,
        maildir_check_timeout=30,
    )

    if args.config_file:
        abs_path = os.path.abspath(args.config_file)
        if not os.path.exists(abs_path):
            logger.error("A file does not exist at {0}".format(abs_path))
            exit(-1)
        opts.silent = True
        _load_config(opts, args.config_file)

    if opts.webhook_url is None:
        opts.webhook_url = os.environ.get(WEBHOOK_URL_ENV_VAR)

    logger.setLevel(logging.ERROR)

    if opts.warnings:
        logger.setLevel(logging.WARNING)
    if opts.verbose:
        logger.setLevel(logging.INFO)
    if opts.debug:
        logger.setLevel(logging.DEBUG)
    if opts.log_file:
        try:
            fh = logging.FileHandler(opts.log_file, "a")
            formatter = logging.Formatter(
                "%(asctime)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
            )
            fh.setFormatter(formatter)
            logger.addHandler(fh)
        except Exception as error:
            logger.warning("Unable to write to log file: {}".format(error))

    if opts.maildir_path is None and len(opts.file_path) == 0:
        logger.error("You must supply input files or a Maildir")
        exit(1)

    client = None
    if opts.webhook_url:
        client = WebhookClient(
            opts.webhook_url,
            analytics_url=opts.webhook_analytics_url,
            timeout=opts.webhook_timeout,
        )

    file_paths = []
    for file_path in opts.file_path:
        file_paths += glob(file_path)
    file_paths = list(set(file_paths))

    records = []
    for file_path in tqdm(file_paths, disable=not sys.stdout.isatty()):
        try:
            with open(file_path, "rb") as email_file:
                raw = email_file.read()
        except OSError as error:
            logger.error("Failed to read {0} - {1}".format(file_path, error))
            continue
        records.append(
            process_email(raw, client=client, max_report_size=opts.max_report_size)
        )

    mailbox_connection = None
    if opts.maildir_path:
        try:
            mailbox_connection = MaildirConnection(
                maildir_path=opts.maildir_path,
                maildir_create=opts.maildir_create,
            )
            records += process_mailbox(
                mailbox_connection,
                client=client,
                archive_folder=opts.maildir_archive_folder,
                delete=opts.maildir_delete,
                test=opts.maildir_test,
                max_report_size=opts.max_report_size,
            )
        except Exception:
            logger.exception("Maildir Error")
            exit(1)

    process_records(records)

    if mailbox_connection and opts.maildir_watch:
        logger.info("Watching for email - Quit with ctrl-c")

        watch_inbox(
            mailbox_connection,
            process_records,
            client=client,
            archive_folder=opts.maildir_archive_folder,
            delete=opts.maildir_delete,
            test=opts.maildir_test,
            check_timeout=opts.maildir_check_timeout,
            max_report_size=opts.max_report_size,
        )


if __name__ == "__main__":
    _main()
