"""A UPnP MediaRenderer control point with GENA event subscriptions."""

import logging

from .core import MediaRendererClient
from .exceptions import MediaRendererException, UPnPError

# Will be parsed by setup.cfg to determine package metadata
__author__ = "The upnp-mediarenderer-client team"
# Please increment the version number and add the suffix "-dev" after
# a release, to make it possible to identify in-development code
__version__ = "0.4.0"
__license__ = "MIT License"

# You really should not `import *` - it is poor practice
# but if you do, here is what you get:
__all__ = [
    "MediaRendererClient",
    "MediaRendererException",
    "UPnPError",
]

# http://docs.python.org/2/howto/logging.html#library-config
# Avoids spurious error messages if no logger is configured by the user

logging.getLogger(__name__).addHandler(logging.NullHandler())
