"""The core module contains the MediaRendererClient class that implements
the main entry to the mediarenderer functionality.

Control actions (``play``, ``set_volume`` etc) are plain blocking calls.
Events are delivered on the asyncio event loop, so listeners must be added
from within a running loop::

    import asyncio
    from mediarenderer import MediaRendererClient

    async def main():
        client = MediaRendererClient("http://192.168.1.50:49152/description.xml")
        client.on("playing", lambda: print("playing"))
        client.on("stopped", lambda: print("stopped"))
        await asyncio.sleep(600)

    asyncio.run(main())
"""

import asyncio
import logging
import math
from collections import defaultdict
from fractions import Fraction
from urllib.parse import urlsplit

from .data_structures import build_metadata
from .device import DeviceClient
from .events import Subscription
from .events_base import SubscriptionFailed
from .exceptions import (
    MediaRendererException,
    NoSuchActionError,
    ServiceNotFoundError,
)
from .utils import format_time, parse_time

_LOG = logging.getLogger(__name__)

#: Events which need a subscription to the AVTransport service
MEDIA_EVENTS = ("status", "loading", "playing", "paused", "stopped", "speedChanged")

#: The media event sent for each value of the TransportState variable
TRANSPORT_STATES = {
    "TRANSITIONING": "loading",
    "PLAYING": "playing",
    "PAUSED_PLAYBACK": "paused",
    "STOPPED": "stopped",
}


def _state_value(value):
    """Return the value of a state variable from an event body, which holds
    it in the ``val`` attribute."""
    if isinstance(value, dict):
        return value.get("val")
    return value


class MediaRendererClient(DeviceClient):
    """A UPnP MediaRenderer.

    Adding a listener for any of `MEDIA_EVENTS` subscribes to the renderer's
    AVTransport events, and removing the last such listener unsubscribes.
    """

    def __init__(self, url):
        """
        Args:
            url (str): The URL of the renderer's device description, or of
                the directory holding it.
        """
        if not url.endswith(".xml") and not url.endswith("/"):
            url += "/"
        super().__init__(url)
        #: int: The AVTransport instance used for actions
        self.instance_id = 0
        #: dict: The active subscriptions, by service id
        self.subscriptions = {}
        self._listeners = defaultdict(list)
        # Serialise subscribing and unsubscribing, per service id
        self._locks = defaultdict(asyncio.Lock)
        self._refs = 0
        self._received_state = False

    def __repr__(self):
        return "<{} at {}>".format(self.__class__.__name__, self.url)

    # Listeners

    def on(self, event, listener):  # pylint: disable=invalid-name
        """Call ``listener`` whenever ``event`` is emitted.

        Args:
            event (str): The event name. ``status`` listeners get the event
                body, ``speedChanged`` listeners the new speed, ``error``
                listeners the failure event and the other `MEDIA_EVENTS`
                listeners no arguments.
            listener (callable): The function to call.
        """
        self._listeners[event].append(listener)
        if event not in MEDIA_EVENTS:
            return
        if self._refs == 0:
            self._received_state = False
            asyncio.ensure_future(self.subscribe("AVTransport", self._on_status))
        self._refs += 1

    def off(self, event, listener):
        """Stop calling ``listener`` for ``event``."""
        if listener not in self._listeners[event]:
            return
        self._listeners[event].remove(listener)
        if event not in MEDIA_EVENTS:
            return
        self._refs -= 1
        if self._refs == 0:
            asyncio.ensure_future(self.unsubscribe("AVTransport"))

    def emit(self, event, *args):
        """Call the listeners for ``event`` with ``args``."""
        for listener in list(self._listeners[event]):
            try:
                listener(*args)
            # pylint: disable=broad-except
            except Exception:
                _LOG.exception("Error in %s listener %s", event, listener)

    def _on_status(self, event):
        if event.kind != "message":
            if event.kind.startswith("error"):
                self.emit("error", event)
            return

        body = event.body
        self.emit("status", body)

        if not self._received_state:
            # The first event holds the full state of the service, so only
            # later ones are state changes
            self._received_state = True
            return

        if "TransportState" in body:
            media_event = TRANSPORT_STATES.get(_state_value(body["TransportState"]))
            if media_event:
                self.emit(media_event)

        if "TransportPlaySpeed" in body:
            speed = _state_value(body["TransportPlaySpeed"])
            try:
                speed = float(Fraction(str(speed)))
            except (ValueError, ZeroDivisionError):
                speed = math.nan
            self.emit("speedChanged", speed)

    # Subscriptions

    async def subscribe(self, service_id, callback):
        """Subscribe to the events of one of the renderer's services.

        Does nothing if the service is already subscribed to.

        Args:
            service_id (str): The service, eg ``'AVTransport'``.
            callback (callable): Called with each event of the subscription.
                If the service cannot be found, it is called once with a
                `SubscriptionFailed` event instead.

        Returns:
            `Subscription`: The subscription, or `None` if there is none.
        """
        async with self._locks[service_id]:
            if service_id in self.subscriptions:
                return self.subscriptions[service_id]
            return await self._async_subscribe(service_id, callback)

    async def _async_subscribe(self, service_id, callback):
        loop = asyncio.get_event_loop()
        try:
            service = await loop.run_in_executor(None, self.get_service, service_id)
        except (MediaRendererException, OSError) as exc:
            # NB requests' exceptions are OSErrors
            _LOG.warning("Subscription to %s failed: %s", service_id, exc)
            callback(SubscriptionFailed(exc))
            return None

        event_url = urlsplit(service.get("eventSubURL") or "")
        if not event_url.hostname:
            exc = ServiceNotFoundError(
                "{} has no event URL for {}".format(self.url, service_id)
            )
            callback(SubscriptionFailed(exc))
            return None

        path = event_url.path or "/"
        if event_url.query:
            path += "?" + event_url.query
        subscription = Subscription(event_url.hostname, event_url.port or 80, path)
        subscription.add_listener(callback)
        self.subscriptions[service_id] = subscription
        await subscription.subscribe()
        return subscription

    async def unsubscribe(self, service_id):
        """Unsubscribe from the events of one of the renderer's services.

        Args:
            service_id (str): The service, eg ``'AVTransport'``.
        """
        async with self._locks[service_id]:
            subscription = self.subscriptions.pop(service_id, None)
            if subscription is None:
                return
            await subscription.unsubscribe()

    # Control

    def set_control_point_name(self, name):
        """Set the public name of this control point.

        Args:
            name (str): The name, sent as the ``User-Agent`` of requests.
        """
        self.control_point_name = name

    def get_supported_protocols(self):
        """Return the protocols the renderer can play.

        Returns:
            list: dicts with ``protocol``, ``network``, ``contentFormat`` and
            ``additionalInfo`` keys, parsed from the ``Sink`` protocol info.
        """
        result = self.call_action("ConnectionManager", "GetProtocolInfo")
        # Only the Sink is of interest for a renderer
        protocols = []
        for line in result.get("Sink", "").split(","):
            if not line.strip():
                continue
            parts = line.strip().split(":", 3) + [None] * 4
            protocols.append(
                {
                    "protocol": parts[0],
                    "network": parts[1],
                    "contentFormat": parts[2],
                    "additionalInfo": parts[3],
                }
            )
        return protocols

    def get_position(self):
        """Return the playback position in the current track, in seconds."""
        result = self.get_position_info()
        position = result.get("AbsTime")
        if not position or position == "NOT_IMPLEMENTED":
            position = result.get("RelTime")
        return parse_time(position)

    def get_duration(self):
        """Return the duration of the current media, in seconds."""
        return parse_time(self.get_media_info()["MediaDuration"])

    # pylint: disable=too-many-arguments
    def set_uri(self, url, content_type="video/mpeg", metadata=None, autoplay=False):
        """Load a media URL on the renderer.

        Args:
            url (str): The media URL.
            content_type (str): Its MIME type.
            metadata (dict, optional): Describes the media. See
                `mediarenderer.data_structures.build_metadata`.
            autoplay (bool): Start playing once loaded.
        """
        protocol_info = "http-get:*:{}:*".format(content_type)
        metadata = dict(metadata or {})
        metadata["url"] = url
        metadata["protocolInfo"] = protocol_info

        try:
            result = self.call_action(
                "ConnectionManager",
                "PrepareForConnection",
                [
                    ("RemoteProtocolInfo", protocol_info),
                    ("PeerConnectionManager", None),
                    ("PeerConnectionID", -1),
                    ("Direction", "Input"),
                ],
            )
            self.instance_id = int(result["AVTransportID"])
        except NoSuchActionError:
            # PrepareForConnection is optional; keep the default instance
            _LOG.debug("PrepareForConnection not implemented by %s", self.url)

        self.call_action(
            "AVTransport",
            "SetAVTransportURI",
            [
                ("InstanceID", self.instance_id),
                ("CurrentURI", url),
                ("CurrentURIMetaData", build_metadata(metadata)),
            ],
        )
        if autoplay:
            self.play()

    def play(self):
        """Play the loaded media."""
        self.call_action(
            "AVTransport", "Play", [("InstanceID", self.instance_id), ("Speed", 1)]
        )

    def pause(self):
        """Pause playback."""
        self.call_action("AVTransport", "Pause", [("InstanceID", self.instance_id)])

    def stop(self):
        """Stop playback."""
        self.call_action("AVTransport", "Stop", [("InstanceID", self.instance_id)])

    def seek(self, seconds):
        """Seek to a position in the current track.

        Args:
            seconds (int): The position. Anything which is not a positive
                finite number seeks to the start.
        """
        try:
            valid = math.isfinite(seconds) and seconds > 0
        except TypeError:
            valid = False
        self.call_action(
            "AVTransport",
            "Seek",
            [
                ("InstanceID", self.instance_id),
                ("Unit", "REL_TIME"),
                ("Target", format_time(seconds if valid else 0)),
            ],
        )

    def get_volume(self):
        """Return the master volume, an integer between 0 and 100."""
        result = self.call_action(
            "RenderingControl",
            "GetVolume",
            [("InstanceID", self.instance_id), ("Channel", "Master")],
        )
        return int(result["CurrentVolume"])

    def set_volume(self, volume):
        """Set the master volume.

        Args:
            volume (int): between 0 and 100.
        """
        self.call_action(
            "RenderingControl",
            "SetVolume",
            [
                ("InstanceID", self.instance_id),
                ("Channel", "Master"),
                ("DesiredVolume", int(volume)),
            ],
        )

    def set_mute(self, mute):
        """Mute or unmute the renderer.

        Args:
            mute (bool): `True` to mute.
        """
        self.call_action(
            "RenderingControl",
            "SetMute",
            [
                ("InstanceID", self.instance_id),
                ("Channel", "Master"),
                ("DesiredMute", bool(mute)),
            ],
        )

    def get_media_info(self):
        """Return the result of the ``GetMediaInfo`` action, which describes
        the current media. It has no effect on the renderer's state."""
        return self.call_action(
            "AVTransport", "GetMediaInfo", [("InstanceID", self.instance_id)]
        )

    def get_position_info(self):
        """Return the result of the ``GetPositionInfo`` action, which
        describes the current position. It has no effect on the renderer's
        state."""
        return self.call_action(
            "AVTransport", "GetPositionInfo", [("InstanceID", self.instance_id)]
        )

    def get_transport_info(self):
        """Return the result of the ``GetTransportInfo`` action, which
        describes the current transport state. It has no effect on the
        renderer's state."""
        return self.call_action(
            "AVTransport", "GetTransportInfo", [("InstanceID", self.instance_id)]
        )
