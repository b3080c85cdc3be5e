# pylint: disable=invalid-name

"""Access to a UPnP device: its description, and the actions of its
services.

>>> device = DeviceClient("http://192.168.1.50:49152/description.xml")
>>> device.get_service("AVTransport")["eventSubURL"]
'http://192.168.1.50:49152/upnp/event/AVTransport1'
>>> device.call_action("RenderingControl", "GetVolume",
...     [("InstanceID", 0), ("Channel", "Master")])
{'CurrentVolume': '12'}
"""

# UPnP Spec at http://upnp.org/specs/arch/UPnP-arch-DeviceArchitecture-v1.0.pdf


import logging
from urllib.parse import urljoin
from xml.parsers.expat import ExpatError
from xml.sax.saxutils import escape

import requests
import xmltodict

from . import config
from .exceptions import (
    NoSuchActionError,
    ServiceNotFoundError,
    UnknownXMLStructure,
    UPnPError,
)
from .utils import prettify
from .xml import XML, illegal_xml_re

log = logging.getLogger(__name__)  # pylint: disable=C0103

# From table 3.3 in
# http://upnp.org/specs/arch/UPnP-arch-DeviceArchitecture-v1.1.pdf
# Error codes between 700-799 are defined for particular services.
UPNP_ERRORS = {
    400: "Bad Request",
    401: "Invalid Action",
    402: "Invalid Args",
    404: "Invalid Var",
    412: "Precondition Failed",
    501: "Action Failed",
    600: "Argument Value Invalid",
    601: "Argument Value Out of Range",
    602: "Optional Action Not Implemented",
    603: "Out Of Memory",
    604: "Human Intervention Required",
    605: "String Argument Too Long",
    606: "Action Not Authorized",
    607: "Signature Failure",
    608: "Signature Missing",
    609: "Not Encrypted",
    610: "Invalid Sequence",
    611: "Invalid Control URL",
    612: "No Such Session",
    701: "Transition not available",
    702: "No contents",
    710: "Seek mode not supported",
    711: "Illegal seek target",
    714: "Illegal MIME-type",
    718: "Invalid InstanceID",
}

SERVICE_URLS = ("SCPDURL", "controlURL", "eventSubURL")


class DeviceClient:
    """A UPnP device, identified by the URL of its description document.

    The description is fetched on first use and cached.
    """

    # pylint: disable=bad-continuation
    soap_body_template = (
        '<?xml version="1.0"?>'
        '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"'
        ' s:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">'
        "<s:Body>"
        '<u:{action} xmlns:u="{service_type}">'
        "{arguments}"
        "</u:{action}>"
        "</s:Body>"
        "</s:Envelope>"
    )  # noqa PEP8

    def __init__(self, url):
        """
        Args:
            url (str): The URL of the device description document.
        """
        #: str: The URL of the device description document
        self.url = url
        #: str: Sent as the ``User-Agent`` of requests, if set
        self.control_point_name = config.CONTROL_POINT_NAME
        self._description = None

    def _headers(self):
        if self.control_point_name:
            return {"User-Agent": self.control_point_name}
        return {}

    def get_device_description(self, refresh=False):
        """Fetch and parse the device description.

        Args:
            refresh (bool): Fetch the description again even if it has been
                fetched before.

        Returns:
            dict: The device's ``deviceType``, ``friendlyName``,
            ``manufacturer``, ``modelName`` and ``UDN``, and under
            ``services`` a dict of service id to service, each service being
            a dict with ``serviceType``, ``serviceId`` and absolute
            ``SCPDURL``, ``controlURL`` and ``eventSubURL``.

        Raises:
            `requests.exceptions.RequestException`: if the description
                cannot be fetched.
            `UnknownXMLStructure`: if it cannot be parsed.
        """
        if self._description is not None and not refresh:
            return self._description
        log.debug("Fetching device description from %s", self.url)
        response = requests.get(
            self.url, headers=self._headers(), timeout=config.REQUEST_TIMEOUT
        )
        response.raise_for_status()
        self._description = self.parse_device_description(response.content, self.url)
        return self._description

    @staticmethod
    def parse_device_description(xml_description, url):
        """Parse a device description document.

        Args:
            xml_description (bytes): The document.
            url (str): Where the document was fetched from. Relative service
                URLs are resolved against the document's ``URLBase``, if it
                has one, or else against this.

        Returns:
            dict: See `get_device_description`.
        """
        try:
            tree = xmltodict.parse(
                xml_description, force_list=("service", "device")
            )
            root = tree["root"]
            device = root["device"][0]
        except (ExpatError, KeyError, TypeError) as exc:
            raise UnknownXMLStructure(
                "Invalid device description at {}".format(url)
            ) from exc

        base_url = root.get("URLBase") or url
        description = {
            key: device.get(key)
            for key in ("deviceType", "friendlyName", "manufacturer", "modelName", "UDN")
        }
        description["services"] = {}

        # Services of embedded devices are listed with those of the root
        # device
        devices = [device]
        while devices:
            current = devices.pop(0)
            for service in (current.get("serviceList") or {}).get("service", []):
                service = dict(service)
                for key in SERVICE_URLS:
                    if service.get(key):
                        service[key] = urljoin(base_url, service[key])
                description["services"][service.get("serviceId")] = service
            devices.extend((current.get("deviceList") or {}).get("device", []))
        return description

    def get_service(self, service_id):
        """Return a service from the device description.

        Args:
            service_id (str): The short service id, eg ``'AVTransport'``, or
                the full one, eg ``'urn:upnp-org:serviceId:AVTransport'``.

        Returns:
            dict: The service. See `get_device_description`.

        Raises:
            `ServiceNotFoundError`: if the device has no such service.
        """
        services = self.get_device_description()["services"]
        if not service_id.startswith("urn:"):
            service_id = "urn:upnp-org:serviceId:" + service_id
        try:
            return services[service_id]
        except KeyError:
            raise ServiceNotFoundError(
                "{} has no service {}".format(self.url, service_id)
            ) from None

    @staticmethod
    def wrap_arguments(args=None):
        """Wrap a list of tuples in xml ready to pass into a SOAP request.

        Args:
            args (list):  a list of (name, value) tuples specifying the
                name of each argument and its value, eg
                ``[('InstanceID', 0), ('Speed', 1)]``. The value
                can be a string or something with a string representation.
                `None` becomes an empty element and booleans become ``1`` or
                ``0``.

        Example:

            >>> print(DeviceClient.wrap_arguments([('InstanceID', 0), ('Speed', 1)]))
            <InstanceID>0</InstanceID><Speed>1</Speed>
        """
        if args is None:
            args = []

        tags = []
        for name, value in args:
            if value is None:
                value = ""
            elif isinstance(value, bool):
                value = int(value)
            tag = "<{name}>{value}</{name}>".format(
                name=name, value=escape("%s" % value, {'"': "&quot;"})
            )
            tags.append(tag)

        return "".join(tags)

    @staticmethod
    def unwrap_arguments(xml_response):
        """Extract arguments and their values from a SOAP response.

        Args:
            xml_response (str):  SOAP/xml response text (unicode,
                not utf-8).
        Returns:
             dict: a dict of ``{argument_name: value}`` items.
        """

        # A UPnP SOAP response (including headers) looks like this:

        # HTTP/1.1 200 OK
        # CONTENT-LENGTH: bytes in body
        # CONTENT-TYPE: text/xml; charset="utf-8" DATE: when response was
        # generated
        # EXT:
        # SERVER: OS/version UPnP/1.0 product/version
        #
        # <?xml version="1.0"?>
        # <s:Envelope
        #   xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"
        #   s:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">
        #   <s:Body>
        #       <u:actionNameResponse
        #           xmlns:u="urn:schemas-upnp-org:service:serviceType:v">
        #           <argumentName>out arg value</argumentName>
        #               ... other out args and their values go here, if any
        #       </u:actionNameResponse>
        #   </s:Body>
        # </s:Envelope>

        xml_response = xml_response.encode("utf-8")
        try:
            tree = XML.fromstring(xml_response)
        except XML.ParseError:
            # Try to filter illegal xml chars (as unicode), in case that is
            # the reason for the parse error
            filtered = illegal_xml_re.sub("", xml_response.decode("utf-8")).encode(
                "utf-8"
            )
            tree = XML.fromstring(filtered)

        body = tree.find("{http://schemas.xmlsoap.org/soap/envelope/}Body")
        if body is None or len(body) == 0:
            raise UnknownXMLStructure("No action response in SOAP body")
        # Some renderers qualify the out arguments with a namespace
        return {i.tag.split("}")[-1]: i.text or "" for i in body[0]}

    def build_command(self, service_type, action, args=None):
        """Build a SOAP request.

        Args:
            service_type (str): the full service type, eg
                ``'urn:schemas-upnp-org:service:AVTransport:1'``.
            action (str): the name of the action to be sent.
            args (list, optional): Relevant arguments as a list of (name,
                value) tuples.

        Returns:
            tuple: a tuple containing the POST headers (as a dict) and a
            string containing the relevant SOAP body.
        """
        body = self.soap_body_template.format(
            arguments=self.wrap_arguments(args),
            action=action,
            service_type=service_type,
        )
        headers = {
            "Content-Type": 'text/xml; charset="utf-8"',
            "SOAPACTION": '"{}#{}"'.format(service_type, action),
        }
        headers.update(self._headers())
        return (headers, body)

    def call_action(self, service_id, action, args=None):
        """Send an action to one of the device's services.

        Args:
            service_id (str): The service, eg ``'AVTransport'``.
            action (str): The action, eg ``'Play'``.
            args (list or dict, optional): The in arguments, as (name, value)
                tuples or a dict, in the order the action declares them.

        Returns:
             dict: a dict of ``{argument_name: value}`` items.

        Raises:
            `ServiceNotFoundError`: if the device has no such service.
            `NoSuchActionError`: if the service does not implement the
                action.
            `UPnPError`: if another SOAP error occurs.
            `requests.exceptions.HTTPError`: if an http error occurs.
        """
        if isinstance(args, dict):
            args = list(args.items())
        service = self.get_service(service_id)
        headers, body = self.build_command(service["serviceType"], action, args)
        log.debug("Sending %s %s to %s", action, args, service["controlURL"])
        if log.isEnabledFor(logging.DEBUG):
            log.debug("Sending %s, %s", headers, prettify(body))
        response = requests.post(
            service["controlURL"],
            headers=headers,
            data=body.encode("utf-8"),
            timeout=config.REQUEST_TIMEOUT,
        )
        log.debug("Received %s, %s", response.headers, response.text)
        status = response.status_code
        if status == 200:
            # NB an empty dict is a valid result. It just means that no
            # params are returned.
            return self.unwrap_arguments(response.text)
        if status == 500:
            # UPnP requires this to be returned if the device does not like
            # the action for some reason. The returned content will be a
            # SOAP Fault. Parse it and raise an error.
            self.handle_upnp_error(response.text)
        # Something else has gone wrong. Probably a network error. Let
        # Requests handle it
        response.raise_for_status()
        raise UnknownXMLStructure(
            "Unexpected status {} for {}".format(status, action)
        )

    @staticmethod
    def handle_upnp_error(xml_error):
        """Disect a UPnP error, and raise an appropriate exception.

        Args:
            xml_error (str):  a unicode string containing the body of the
                UPnP/SOAP Fault response. Raises an exception containing the
                error code.
        """

        # An error code looks something like this:

        # HTTP/1.1 500 Internal Server Error
        # CONTENT-LENGTH: bytes in body
        # CONTENT-TYPE: text/xml; charset="utf-8"
        # DATE: when response was generated
        # EXT:
        # SERVER: OS/version UPnP/1.0 product/version

        # <?xml version="1.0"?>
        # <s:Envelope
        #   xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"
        #   s:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">
        #   <s:Body>
        #       <s:Fault>
        #           <faultcode>s:Client</faultcode>
        #           <faultstring>UPnPError</faultstring>
        #           <detail>
        #               <UPnPError xmlns="urn:schemas-upnp-org:control-1-0">
        #                   <errorCode>error code</errorCode>
        #                   <errorDescription>error string</errorDescription>
        #               </UPnPError>
        #           </detail>
        #       </s:Fault>
        #   </s:Body>
        # </s:Envelope>

        xml_error = xml_error.encode("utf-8")
        try:
            error = XML.fromstring(xml_error)
        except XML.ParseError:
            raise UnknownXMLStructure("Unparseable error response") from None
        log.debug("Error %s", xml_error)
        error_code = error.findtext(".//{urn:schemas-upnp-org:control-1-0}errorCode")
        if error_code is None:
            return
        error_code = error_code.strip()
        description = error.findtext(
            ".//{urn:schemas-upnp-org:control-1-0}errorDescription"
        ) or UPNP_ERRORS.get(int(error_code), "")
        exception_class = NoSuchActionError if error_code == "401" else UPnPError
        raise exception_class(
            "UPnP Error {} received: {}".format(error_code, description),
            error_code=error_code,
            error_xml=xml_error,
            error_description=description,
        )
