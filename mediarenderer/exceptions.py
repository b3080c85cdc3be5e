"""Exceptions that are used by mediarenderer."""


class MediaRendererException(Exception):

    """Base class for all mediarenderer exceptions."""


class UPnPError(MediaRendererException):

    """A UPnP Fault Code, raised in response to actions sent over the
    network.

    """

    def __init__(self, message, error_code, error_xml, error_description=""):
        """
        Args:
            message (str): The message from the server.
            error_code (str): The UPnP Error Code as a string.
            error_xml (str): The xml containing the error, as a utf-8
                encoded string.
            error_description (str): A description of the error. Default is ""
        """
        super().__init__()
        self.message = message
        self.error_code = error_code
        self.error_description = error_description
        self.error_xml = error_xml

    def __str__(self):
        return self.message


class NoSuchActionError(UPnPError):

    """Raised when the renderer answers UPnP error 401 (Invalid Action).

    Optional actions such as ``PrepareForConnection`` are often not
    implemented, and callers may want to fall back to a default.
    """


class ServiceNotFoundError(MediaRendererException):

    """Raised if the device description does not list a service, or the
    service has no URL for the requested purpose."""


class SubscriptionError(MediaRendererException):

    """Raised if a GENA subscription request is refused or its response is
    missing required headers, or if a `Subscription` is used out of order."""


class UnknownXMLStructure(MediaRendererException):

    """Raised if XML with an unknown or unexpected structure is returned."""
