"""Sets global version values"""

import platform

__version__ = "1.2.0"

USER_AGENT = "Mozilla/5.0 (({0} {1})) dmarcmail/{2}".format(
    platform.system(), platform.release(), __version__
)

DEFAULT_MAX_REPORT_SIZE = 50 * 1024 * 1024
