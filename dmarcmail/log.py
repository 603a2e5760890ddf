import logging

logger = logging.getLogger("dmarcmail")
logger.addHandler(logging.NullHandler())
