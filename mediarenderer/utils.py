"""This module contains utility functions used internally by mediarenderer."""

import re


TIME_RE = re.compile(r"^(?:\d+:)+\d+(?:\.\d+)?$")


def prettify(unicode_text):
    """Return a pretty-printed version of a unicode XML string.

    Useful for debugging.

    Args:
        unicode_text (str): A text representation of XML (unicode,
            *not* utf-8).

    Returns:
        str: A pretty-printed version of the input.

    """
    import xml.dom.minidom  # pylint: disable=import-outside-toplevel

    reparsed = xml.dom.minidom.parseString(unicode_text.encode("utf-8"))
    return reparsed.toprettyxml(indent="  ", newl="\n")


def format_time(seconds):
    """Format a number of seconds as a UPnP ``HH:MM:SS`` time string.

    Fractions of a second are dropped.

    Args:
        seconds (int): The number of seconds.

    Returns:
        str: The formatted time, eg ``'01:02:03'``.

    >>> format_time(3723)
    '01:02:03'
    """
    seconds = int(seconds)
    hours, remainder = divmod(seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return "{:02d}:{:02d}:{:02d}".format(hours, minutes, seconds)


def parse_time(time_string):
    """Convert a ``H:MM:SS[.fff]`` time string into seconds.

    Args:
        time_string (str): The time, as returned by the renderer.

    Returns:
        int or float: The number of seconds. An `int` unless the string
        carries a fractional part.

    Raises:
        ValueError: If ``time_string`` is not a time (eg
            ``'NOT_IMPLEMENTED'``).
    """
    if not TIME_RE.match(time_string):
        raise ValueError("Not a time: {}".format(time_string))
    total = 0.0
    for part in time_string.split(":"):
        total = total * 60 + float(part)
    return int(total) if total.is_integer() else total
