"""Parsing of UPnP event bodies, the event types sent to subscribers and the
mapping of sids to subscriptions. Used by :py:mod:`mediarenderer.events`."""


import logging
import re
import socket
from collections import namedtuple
from xml.parsers.expat import ExpatError

import ifaddr
import xmltodict

from . import config
from .utils import TIME_RE

log = logging.getLogger(__name__)  # pylint: disable=C0103

#: The namespace of the ``propertyset`` wrapping every event body.
EVENT_NS = "urn:schemas-upnp-org:event-1-0"

# Strips the InstanceID element (and anything outside it) from a LastChange
# value, leaving the state variable elements minus the first "<" and the
# final "/>".
INSTANCE_RE = re.compile(
    r'^[\S\s]*<InstanceID val="\d+"><([\S\s]*)/></InstanceID>[\S\s]*$'
)
METADATA_GROUP_RE = re.compile(r"^(?:CurrentTrackMetaData|AVTransportURIMetaData)")
ATTRIBUTE_RE = re.compile(r'([^\s=]+)(?:=("[^"]*"|\S*))?')
RESOLUTION_RE = re.compile(r"\B\d+x\d+\B")
INTEGER_RE = re.compile(r"^[+-]?\d+$")
SECONDS_RE = re.compile(r"\d+")

#: The groups whose values are comma separated lists.
LIST_GROUPS = ("CurrentTransportActions",)
#: The groups carrying DIDL-Lite metadata, which are parsed as documents.
METADATA_GROUPS = ("CurrentTrackMetaData", "AVTransportURIMetaData")


def parse_event_xml(xml_event):
    """Parse the body of a UPnP event.

    Only the ``LastChange`` variable is of interest. For details on
    LastChange events, see
    http://upnp.org/specs/av/UPnP-av-AVTransport-v1-Service.pdf

    Args:
        xml_event (bytes or str): the body of the event.

    Returns:
        dict: A dict whose keys are the names of the changed state
        variables (eg ``'TransportState'``) and whose values are dicts of
        their attributes (eg ``{'val': 'PLAYING'}``), or `None` if the
        event carries nothing usable.
    """
    last_change = extract_last_change(xml_event)
    if last_change is None:
        return None
    payload = classify_last_change(last_change)
    if payload is None:
        log.debug("Unrecognised LastChange value: %s", last_change)
        return None
    return payload.parse()


def extract_last_change(xml_event):
    """Return the text of the ``LastChange`` property of an event body, or
    `None` if there is no such property."""
    try:
        tree = xmltodict.parse(
            xml_event, process_namespaces=True, namespaces={EVENT_NS: None}
        )
    except ExpatError as exc:
        log.debug("Cannot parse event body: %s", exc)
        return None

    propertyset = tree.get("propertyset") or {}
    properties = propertyset.get("property") or []
    # A single property is not wrapped in a list by xmltodict
    if not isinstance(properties, list):
        properties = [properties]
    for prop in properties:
        if not isinstance(prop, dict) or "LastChange" not in prop:
            continue
        value = prop["LastChange"]
        # Repeated elements come back as a list, of which the first is used
        if isinstance(value, list):
            value = value[0] if value else None
        if isinstance(value, dict):
            value = value.get("#text")
        return value if isinstance(value, str) else None
    return None


class MetadataPayload(namedtuple("MetadataPayloadBase", "fragment")):
    """A LastChange fragment carrying track and source metadata."""

    __slots__ = ()

    def parse(self):
        """Parse the fragment. See `parse_metadata_payload`."""
        return parse_metadata_payload(self.fragment)


class AttributeListPayload(namedtuple("AttributeListPayloadBase", "fragment")):
    """A LastChange fragment made of self closing elements with attributes."""

    __slots__ = ()

    def parse(self):
        """Parse the fragment. See `parse_attribute_payload`."""
        return parse_attribute_payload(self.fragment)


def classify_last_change(last_change):
    """Strip the ``InstanceID`` wrapper from a LastChange value and decide
    which shape of payload it carries.

    Args:
        last_change (str): The (unescaped) LastChange value.

    Returns:
        `MetadataPayload` or `AttributeListPayload`, or `None` if the value
        is not wrapped in an ``InstanceID`` element.
    """
    match = INSTANCE_RE.match(last_change)
    if not match:
        return None
    fragment = match.group(1)
    if METADATA_GROUP_RE.match(fragment):
        return MetadataPayload(fragment)
    return AttributeListPayload(fragment)


def coerce_value(group, value):
    """Convert an attribute value according to its shape.

    Time values (``0:03:00``) and resolutions (``1920x1080``) are kept as
    strings, values in `LIST_GROUPS` are split on commas, whole integers
    are converted to `int` and anything else is returned unchanged. Note
    that ``'5.5'`` is not a whole integer, so it remains a string.
    """
    if TIME_RE.match(value) or RESOLUTION_RE.search(value):
        return value
    if group in LIST_GROUPS:
        return value.split(",")
    if INTEGER_RE.match(value):
        return int(value)
    return value


def parse_attribute_payload(fragment):
    """Parse a fragment like
    ``TransportState val="PLAYING"/><CurrentTrackDuration val="0:03:00"``.

    Returns:
        dict: ``{group: {attribute: value}}``. A bare attribute without
        ``=`` gets the value `None`.
    """
    fragment = fragment.strip()
    if fragment.startswith("<"):
        fragment = fragment[1:]
    if fragment.endswith("/>"):
        fragment = fragment[:-2]
    result = {}
    for element in fragment.split("/><"):
        element = element.strip()
        if not element:
            continue
        group, _, attributes = element.partition(" ")
        record = result[group] = {}
        for match in ATTRIBUTE_RE.finditer(attributes):
            name, value = match.groups()
            if value is None:
                record[name] = None
            else:
                record[name] = coerce_value(group, value.replace('"', ""))
    return result


def _postprocess(path, key, value):  # pylint: disable=unused-argument
    if isinstance(value, str) and INTEGER_RE.match(value):
        return key, int(value)
    return key, value


def _metadata_item(group):
    """Return the DIDL-Lite item of a metadata group, whether it is given
    inline or as an escaped ``val`` attribute."""
    if "DIDL-Lite" in group:
        group = group["DIDL-Lite"]
    if "item" in group:
        item = group["item"]
    else:
        didl = xmltodict.parse(group["val"], attr_prefix="", postprocessor=_postprocess)
        item = didl["DIDL-Lite"]["item"]
    if isinstance(item, list):
        item = item[0]
    return dict(item or {})


def _flatten_resource(item):
    """Merge the ``res`` element of an item into the item itself.

    Fields of the resource overwrite fields of the item with the same name.
    """
    resource = item.pop("res", None)
    if isinstance(resource, list):
        resource = resource[0]
    if isinstance(resource, dict):
        item.update(resource)
    elif resource is not None:
        item["#text"] = resource
    return item


def parse_metadata_payload(fragment):
    """Parse a fragment holding ``CurrentTrackMetaData`` and
    ``AVTransportURIMetaData`` elements.

    Returns:
        dict: ``{'CurrentTrackMetaData': {...}, 'AVTransportURIMetaData':
        {...}}``, each value being the DIDL-Lite item merged with its
        resource, or `None` if either group is missing or malformed.
    """
    document = "<LastChange><{}/></LastChange>".format(fragment)
    try:
        tree = xmltodict.parse(document, attr_prefix="", postprocessor=_postprocess)
        groups = tree["LastChange"]
        return {
            name: _flatten_resource(_metadata_item(groups[name]))
            for name in METADATA_GROUPS
        }
    except (ExpatError, KeyError, TypeError, AttributeError) as exc:
        log.debug("Cannot parse metadata %s: %r", fragment, exc)
        return None


def parse_timeout(header, default):
    """Return the number of seconds in a ``TIMEOUT`` response header.

    The UPnP form is ``Second-1800``, but some renderers send other text
    around the number, so the first integer found is used. ``default`` is
    returned if there is no header or it holds no number (eg
    ``infinite``).
    """
    if header:
        match = SECONDS_RE.search(header)
        if match:
            return int(match.group())
    return default


class Subscribed(namedtuple("SubscribedBase", "sid")):
    """Sent when the initial SUBSCRIBE succeeds."""

    __slots__ = ()
    kind = "subscribed"


class Resubscribed(namedtuple("ResubscribedBase", "sid")):
    """Sent when a subscription has been renewed."""

    __slots__ = ()
    kind = "resubscribed"


class Unsubscribed(namedtuple("UnsubscribedBase", "sid")):
    """Sent when an UNSUBSCRIBE has been answered, or has timed out."""

    __slots__ = ()
    kind = "unsubscribed"


class Message(namedtuple("MessageBase", "sid, body")):
    """An event notification. ``body`` is the result of `parse_event_xml`."""

    __slots__ = ()
    kind = "message"


class SubscriptionFailed(namedtuple("SubscriptionFailedBase", "cause")):
    """Sent when the initial SUBSCRIBE fails."""

    __slots__ = ()
    kind = "error"


class ResubscribeFailed(namedtuple("ResubscribeFailedBase", "sid, cause")):
    """Sent when a renewal fails. The subscription is not renewed again."""

    __slots__ = ()
    kind = "error:resubscribe"


class UnsubscribeFailed(namedtuple("UnsubscribeFailedBase", "sid, cause")):
    """Sent when an UNSUBSCRIBE cannot be delivered, or there is nothing to
    unsubscribe from."""

    __slots__ = ()
    kind = "error:unsubscribe"


class SubscriptionsMap:
    """Maintains a mapping of sids to `mediarenderer.events.Subscription`
    instances.

    All access happens on the event loop thread, so no lock is needed.
    """

    def __init__(self):
        #: `dict`: mapping of sid to subscription
        self.subscriptions = {}

    def register(self, subscription):
        """Register a subscription under its sid.

        Args:
            subscription(`mediarenderer.events.Subscription`): the
                subscription to be registered.
        """
        self.subscriptions[subscription.sid] = subscription

    def unregister(self, sid):
        """Forget the subscription registered under ``sid``, if any."""
        self.subscriptions.pop(sid, None)

    def get_subscription(self, sid):
        """Look up a subscription from a sid.

        Args:
            sid(str): The sid from which to look up the subscription.

        Returns:
            `mediarenderer.events.Subscription`: The subscription relating
            to that sid, or `None`.
        """
        if sid is None:
            return None
        return self.subscriptions.get(sid)

    @property
    def count(self):
        """
        `int`: The number of active subscriptions.
        """
        return len(self.subscriptions)


def get_listen_ip(ip_address, port=1900):
    """Find a local IP address through which ``ip_address`` can reach us."""
    if config.EVENT_LISTENER_IP and config.EVENT_LISTENER_IP != "0.0.0.0":
        return config.EVENT_LISTENER_IP
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect((ip_address, port))
        return sock.getsockname()[0]
    except OSError:
        log.debug("No route to %s, falling back to interface scan", ip_address)
    finally:
        sock.close()
    for adapter in ifaddr.get_adapters():
        for adapter_ip in adapter.ips:
            if adapter_ip.is_IPv4 and not adapter_ip.ip.startswith("127."):
                return adapter_ip.ip
    return None
