# pylint: disable=invalid-name,wrong-import-position,redefined-builtin

"""This module contains XML related utility functions."""


import sys
import re

import xml.etree.ElementTree as XML


# Create regular expression for filtering invalid characters, from:
# http://stackoverflow.com/questions/1707890/
# fast-way-to-filter-illegal-xml-unicode-chars-in-python

illegal_unichrs = [
    (0x00, 0x08),
    (0x0B, 0x0C),
    (0x0E, 0x1F),
    (0x7F, 0x84),
    (0x86, 0x9F),
    (0xD800, 0xDFFF),
    (0xFDD0, 0xFDDF),
    (0xFFFE, 0xFFFF),
]

illegal_ranges = [
    "{}-{}".format(chr(low), chr(high))
    for (low, high) in illegal_unichrs
    if low < sys.maxunicode
]

illegal_xml_re = re.compile("[%s]" % "".join(illegal_ranges))


#: Namespaces declared on the DIDL-Lite metadata documents sent to renderers.
NAMESPACES = {
    "xmlns": "urn:schemas-upnp-org:metadata-1-0/DIDL-Lite/",
    "xmlns:dc": "http://purl.org/dc/elements/1.1/",
    "xmlns:upnp": "urn:schemas-upnp-org:metadata-1-0/upnp/",
    "xmlns:sec": "http://www.sec.co.kr/",
}
