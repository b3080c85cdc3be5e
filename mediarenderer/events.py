"""Classes to handle UPnP (GENA) event subscriptions to a renderer using
asyncio.

A single `EventListener` per process is the callback endpoint for every
`Subscription`. It is started by the first subscription and stays up for
the life of the process.

Example:

    Run this code, and play, pause or stop something on the renderer::

        import asyncio
        import logging

        logging.basicConfig(level=logging.DEBUG)

        from mediarenderer.events import Subscription


        def print_event(event):
            print(event.kind, event)


        async def main():
            sub = Subscription(
                "192.168.1.50", 49152, "/upnp/event/AVTransport1"
            ).add_listener(print_event)
            await sub.subscribe()
            await asyncio.sleep(100)
            await sub.unsubscribe()


        if __name__ == "__main__":
            asyncio.run(main())

"""

import asyncio
import enum
import logging
import socket
import time

from aiohttp import ClientError, ClientSession, web

from . import config
from .events_base import (
    get_listen_ip,
    parse_event_xml,
    parse_timeout,
    Message,
    ResubscribeFailed,
    Resubscribed,
    Subscribed,
    SubscriptionFailed,
    SubscriptionsMap,
    UnsubscribeFailed,
    Unsubscribed,
)
from .exceptions import SubscriptionError

log = logging.getLogger(__name__)  # pylint: disable=C0103

# Failures of an outbound SUBSCRIBE which are reported as events rather than
# raised. NB asyncio.TimeoutError is an OSError on recent Pythons.
REQUEST_ERRORS = (ClientError, asyncio.TimeoutError, OSError, SubscriptionError)


class EventNotifyHandler:
    """Handles HTTP ``NOTIFY`` requests sent to the listener server."""

    def __init__(self, subscriptions_map):
        #: `SubscriptionsMap`: used to find the subscription for a sid
        self.subscriptions_map = subscriptions_map

    async def notify(self, request):
        """Serve a ``NOTIFY`` request by parsing the body and sending the
        result to the subscription registered under the ``SID`` header.

        The renderer always gets a 200, whether or not the event could be
        routed or parsed.
        """
        content = await request.read()
        sid = request.headers.get("sid")
        seq = request.headers.get("seq")
        subscription = self.subscriptions_map.get_subscription(sid)
        # It might have been unsubscribed while the event was in flight
        if subscription:
            log.debug("Event %s received for %s via %s", seq, sid, request.method)
            log.debug("Event content: %s", content)
            try:
                body = parse_event_xml(content)
            except Exception:  # pylint: disable=broad-except
                log.exception("Could not parse event %s for %s", seq, sid)
                body = None
            if body is not None:
                subscription.send_event(Message(sid, body))
            else:
                log.debug("Event %s for %s carries no usable data", seq, sid)
        else:
            log.debug("No service registered for %s", sid)

        return web.Response(text="OK", status=200)


class EventListener:  # pylint: disable=too-many-instance-attributes
    """The Event Listener.

    Runs an http server which is the endpoint for ``NOTIFY`` requests from
    renderers, and holds the client session used to send ``SUBSCRIBE`` and
    ``UNSUBSCRIBE`` requests.
    """

    def __init__(self, subscriptions=None):
        """
        Args:
            subscriptions (SubscriptionsMap, optional): The registry used to
                route incoming events. A new one is created if not given.
        """
        #: `SubscriptionsMap`: The registry used to route incoming events
        self.subscriptions_map = (
            SubscriptionsMap() if subscriptions is None else subscriptions
        )
        #: `bool`: Indicates whether the server is currently running
        self.is_running = False
        #: `tuple`: The address (ip, port) on which the server is listening.
        #: Empty until the server has started.
        self.address = ()
        #: `aiohttp.ClientSession`: Used by subscriptions for their requests
        self.session = None
        self.sock = None
        self.runner = None
        self.site = None
        # Completed (or failed) once the server is bound
        self._ready = None
        # The event loop on which the server was started
        self._loop = None

    @property
    def port(self):
        """`int`: The port on which the server is listening, or `None`."""
        return self.address[1] if self.address else None

    def ensure_started(self, on_ready=None):
        """Start the server, unless it is already started or starting.

        Args:
            on_ready (callable, optional): Called with the startup future once
                the server is bound (or has failed to start). Callers which
                arrive while startup is in progress are called in the order
                in which they arrived, and a caller which arrives after the
                server has started is called on the next turn of the event
                loop, never from within this method.

        Returns:
            `asyncio.Future`: The startup future, whose result is the port.
        """
        loop = asyncio.get_event_loop()
        if self._ready is not None and self._loop is not loop:
            # Started on a loop which has since been replaced, eg by a second
            # asyncio.run(). Nothing of that server can be used here.
            log.debug("Event loop changed, restarting Event Listener")
            self._discard()
        if self._ready is None:
            self._loop = loop
            self._ready = loop.create_future()
            asyncio.ensure_future(self._async_start(self._ready))
        if on_ready is not None:
            self._ready.add_done_callback(on_ready)
        return self._ready

    async def async_start(self):
        """Start the server if need be, and wait until it is listening.

        Returns:
            int: The port on which the server is listening.

        Raises:
            Exception: whatever stopped the server from starting, most often
                an `OSError`.
        """
        # Shielded so that a cancelled caller does not cancel startup for
        # everybody else
        return await asyncio.shield(self.ensure_started())

    async def _async_start(self, ready):
        ip_address = config.EVENT_LISTENER_IP or "0.0.0.0"
        try:
            port = await self.async_listen(ip_address, config.EVENT_LISTENER_PORT)
        except Exception as exc:  # pylint: disable=broad-except
            log.exception("Could not start Event Listener: check network.")
            # Allow a later caller to try again
            if self._ready is ready:
                self._ready = None
            ready.set_exception(exc)
            return
        self.address = (ip_address, port)
        self.session = ClientSession()
        self.is_running = True
        log.debug("Event Listener started")
        ready.set_result(port)

    async def async_listen(self, ip_address, port_number):
        """Start listening on ``ip_address``.

        Handling of requests is delegated to an instance of the
        `EventNotifyHandler` class.

        Args:
            ip_address (str): The local network interface on which the server
                should start listening.
            port_number (int): The port to listen on. 0 lets the operating
                system choose one.

        Returns:
            int: The port on which the server is listening.
        """
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((ip_address, port_number))
            sock.listen(200)
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        self.sock = sock

        handler = EventNotifyHandler(self.subscriptions_map)
        app = web.Application()
        # Renderers use NOTIFY, but accept whatever they send, on any path
        app.add_routes([web.route("*", "/{tail:.*}", handler.notify)])
        self.runner = web.AppRunner(app, access_log=None)
        try:
            await self.runner.setup()
            self.site = web.SockSite(self.runner, sock)
            await self.site.start()
        except Exception:
            await self.runner.cleanup()
            self.runner = None
            self.site = None
            self.sock = None
            sock.close()
            raise
        port = sock.getsockname()[1]
        log.debug("Event listener running on %s", (ip_address, port))
        return port

    async def async_stop(self):
        """Stop the listener.

        Not needed in normal operation, since the listener lives as long as
        the process. Useful in tests.
        """
        if self.site:
            await self.site.stop()
            self.site = None
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
        if self.session:
            await self.session.close()
            self.session = None
        if self.sock:
            self.sock.close()
            self.sock = None
        self.address = ()
        self.is_running = False
        self._ready = None
        log.debug("Event Listener stopped")

    def _discard(self):
        """Forget a server started on another event loop, without touching
        that loop."""
        if self.session is not None and not self.session.closed:
            # The session cannot be closed from here, so let it go quietly
            self.session.detach()
        if self.sock:
            self.sock.close()
        self.session = None
        self.sock = None
        self.runner = None
        self.site = None
        self.address = ()
        self.is_running = False
        self._ready = None
        self._loop = None


class SubscriptionState(enum.Enum):
    """The states of a `Subscription`."""

    UNINITIALIZED = "uninitialized"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    RESUBSCRIBING = "resubscribing"
    UNSUBSCRIBING = "unsubscribing"
    TERMINATED = "terminated"
    #: The last subscribe or renewal failed. Only `unsubscribe` applies.
    ERROR = "error"


class Subscription:  # pylint: disable=too-many-instance-attributes
    """A subscription to the events of one service of one renderer.

    Lifecycle changes and received events are sent to the listeners added
    with `add_listener`, as instances of the event classes in
    :py:mod:`mediarenderer.events_base`.
    """

    # pylint: disable=too-many-arguments
    def __init__(self, host, port, event_sub_url, requested_timeout=None, listener=None):
        """
        Args:
            host (str): The renderer's IP address or host name.
            port (int): The renderer's HTTP port.
            event_sub_url (str): The service's event subscription path.
            requested_timeout (int, optional): The subscription duration to
                request, in seconds. Defaults to
                `config.DEFAULT_SUBSCRIPTION_TIMEOUT`.
            listener (EventListener, optional): The callback server to use.
                Defaults to the process wide `event_listener`.
        """
        self.host = host
        self.port = port
        self.event_sub_url = event_sub_url
        #: `int`: The period (seconds) for which the subscription is requested
        self.requested_timeout = requested_timeout or config.DEFAULT_SUBSCRIPTION_TIMEOUT
        #: `str`: The sid given by the renderer, once subscribed
        self.sid = None
        #: `int`: The period (seconds) granted by the renderer
        self.timeout = None
        #: `SubscriptionState`: Where the subscription is in its lifecycle
        self.state = SubscriptionState.UNINITIALIZED
        #: `list`: Callables to which events are sent
        self.listeners = []
        self.event_listener = event_listener if listener is None else listener
        self.subscriptions_map = self.event_listener.subscriptions_map
        self._auto_renew_task = None
        self._timestamp = None
        self._lock = None
        self._subscribing = None

    def __repr__(self):
        return "<{} {} sid={} {}>".format(
            self.__class__.__name__, self.url, self.sid, self.state.value
        )

    @property
    def url(self):
        """`str`: The full URL to which subscription requests are sent."""
        path = self.event_sub_url
        if not path.startswith("/"):
            path = "/" + path
        return "http://{}:{}{}".format(self.host, self.port, path)

    @property
    def callback_url(self):
        """`str`: The value of the ``CALLBACK`` header, eg
        ``'<http://192.168.1.10:41234>'``."""
        ip_address = config.EVENT_ADVERTISE_IP or get_listen_ip(self.host)
        if not ip_address:
            raise SubscriptionError(
                "No local address reachable from {}: check network".format(self.host)
            )
        return "<http://{}:{}>".format(ip_address, self.event_listener.port)

    @property
    def lock(self):
        """`asyncio.Lock`: Serialises subscribe, renew and unsubscribe."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    @property
    def time_left(self):
        """
        `int`: The amount of time left until the subscription expires (seconds)
        If the subscription is unsubscribed (or not yet subscribed),
        `time_left` is 0.
        """
        if self._timestamp is None:
            return 0
        time_left = self.timeout - (time.monotonic() - self._timestamp)
        return time_left if time_left > 0 else 0

    def add_listener(self, listener):
        """Add a callable to be called with each event.

        Returns:
            `Subscription`: The Subscription instance.
        """
        self.listeners.append(listener)
        return self

    def remove_listener(self, listener):
        """Remove a callable added with `add_listener`."""
        if listener in self.listeners:
            self.listeners.remove(listener)

    def send_event(self, event):
        """Send an event to every listener.

        An exception raised by one listener is logged and does not stop the
        event reaching the others.
        """
        for listener in list(self.listeners):
            try:
                listener(event)
            # pylint: disable=broad-except
            except Exception:
                log.exception("Error sending %s event for %s", event.kind, self.url)

    def subscribe(self):
        """Subscribe to the service.

        Starts the event listener if it is not running, then sends the
        initial ``SUBSCRIBE``. Success is reported with a `Subscribed`
        event, failure with a `SubscriptionFailed` event.

        Returns:
            `asyncio.Task`: Completes with the Subscription instance.

        Raises:
            SubscriptionError: If this instance has been subscribed before.
        """
        if self.state is not SubscriptionState.UNINITIALIZED:
            raise SubscriptionError(
                "Cannot subscribe Subscription instance more than once"
            )
        self.state = SubscriptionState.SUBSCRIBING
        self._subscribing = asyncio.ensure_future(self._async_subscribe())
        return self._subscribing

    async def _async_subscribe(self):
        async with self.lock:
            try:
                await self.event_listener.async_start()
            # Whatever stopped the listener starting is reported, not raised
            except Exception as exc:  # pylint: disable=broad-except
                log.debug("No event listener for %s: %r", self.url, exc)
                self.state = SubscriptionState.ERROR
                self.send_event(SubscriptionFailed(exc))
                return self
            try:
                # an event subscription looks like this:
                # SUBSCRIBE publisher path HTTP/1.1
                # HOST: publisher host:publisher port
                # CALLBACK: <delivery URL>
                # NT: upnp:event
                # TIMEOUT: Second-requested subscription duration
                headers = {
                    "CALLBACK": self.callback_url,
                    "NT": "upnp:event",
                    "TIMEOUT": "Second-{}".format(self.requested_timeout),
                }
                response = await self._request("SUBSCRIBE", headers)
                sid = response.headers.get("sid")
                if response.status >= 300:
                    raise SubscriptionError(
                        "SUBSCRIBE to {} failed with status {}".format(
                            self.url, response.status
                        )
                    )
                if not sid:
                    raise SubscriptionError(
                        "No SID in response to SUBSCRIBE to {}".format(self.url)
                    )
            except REQUEST_ERRORS as exc:
                log.debug("Subscription to %s failed: %r", self.url, exc)
                self.state = SubscriptionState.ERROR
                self.send_event(SubscriptionFailed(exc))
                return self

            self.sid = sid
            self.timeout = parse_timeout(
                response.headers.get("timeout"), self.requested_timeout
            )
            self._timestamp = time.monotonic()
            self.state = SubscriptionState.ACTIVE
            log.debug("Subscribed to %s, sid: %s", self.url, self.sid)
            # Register the subscription so it can be looked up by sid
            self.subscriptions_map.register(self)
            self._auto_renew_start(self.timeout - 1)
            self.send_event(Subscribed(self.sid))
            return self

    async def renew(self):
        """Renew the event subscription.

        Called by the renewal timer one second before the subscription
        expires. The renewal asks for, and is re-armed with, the period
        granted by the initial subscribe; any new period in the renewal
        response is ignored.

        Success is reported with a `Resubscribed` event, failure with a
        `ResubscribeFailed` event. After a failure the subscription is not
        renewed again.

        Returns:
            `Subscription`: The Subscription instance.
        """
        async with self.lock:
            if self.state is not SubscriptionState.ACTIVE:
                log.debug("Not renewing %s: subscription is %s", self.url, self.state)
                return self
            log.debug("Renewing subscription %s", self.sid)
            self.state = SubscriptionState.RESUBSCRIBING
            # SUBSCRIBE publisher path HTTP/1.1
            # HOST: publisher host:publisher port
            # SID: uuid:subscription UUID
            # TIMEOUT: Second-requested subscription duration
            headers = {"SID": self.sid, "TIMEOUT": "Second-{}".format(self.timeout)}
            try:
                response = await self._request("SUBSCRIBE", headers)
            except REQUEST_ERRORS as exc:
                return self._renew_failed(exc)
            if response.status >= 300:
                # The renderer no longer knows the sid, so no more events can
                # arrive for it
                self.subscriptions_map.unregister(self.sid)
                return self._renew_failed(
                    SubscriptionError(
                        "Renewal of {} failed with status {}".format(
                            self.sid, response.status
                        )
                    )
                )

            self._timestamp = time.monotonic()
            self.state = SubscriptionState.ACTIVE
            log.debug("Renewed subscription to %s, sid: %s", self.url, self.sid)
            self._auto_renew_start(self.timeout - 1)
            self.send_event(Resubscribed(self.sid))
            return self

    def _renew_failed(self, exc):
        log.warning("Renewal of subscription to %s failed: %r", self.url, exc)
        self._auto_renew_cancel()
        self.state = SubscriptionState.ERROR
        self.send_event(ResubscribeFailed(self.sid, exc))
        return self

    async def unsubscribe(self):
        """Unsubscribe from the service's events.

        The sid is removed from the registry whatever the outcome. A renderer
        which does not answer within `config.UNSUBSCRIBE_TIMEOUT` seconds is
        treated as unsubscribed. If the request cannot be sent the
        subscription is left in the `SubscriptionState.ERROR` state, and
        calling this again retries. Once unsubscribed, a Subscription instance
        should not be reused.

        Returns:
            `Subscription`: The Subscription instance.
        """
        # Cancel any renewal before waiting for the lock, so that a renewal
        # cannot be sent while we unsubscribe
        self._auto_renew_cancel()
        if self._subscribing is not None and not self._subscribing.done():
            # The subscribe task may not have taken the lock yet
            await asyncio.wait([self._subscribing])
        async with self.lock:
            # A subscribe which held the lock may have armed a new timer
            self._auto_renew_cancel()
            if self.state is SubscriptionState.TERMINATED:
                return self
            self.state = SubscriptionState.UNSUBSCRIBING
            sid = self.sid
            self.subscriptions_map.unregister(sid)
            self._timestamp = None

            if not sid:
                self.state = SubscriptionState.TERMINATED
                self.send_event(
                    UnsubscribeFailed(None, SubscriptionError("No SID for subscription"))
                )
                return self

            # UNSUBSCRIBE publisher path HTTP/1.1
            # HOST: publisher host:publisher port
            # SID: uuid:subscription UUID
            try:
                response = await asyncio.wait_for(
                    self._request("UNSUBSCRIBE", {"SID": sid}),
                    config.UNSUBSCRIBE_TIMEOUT,
                )
            except asyncio.TimeoutError:
                log.debug("No answer to UNSUBSCRIBE from %s, sid: %s", self.url, sid)
                event = Unsubscribed(sid)
            except (ClientError, OSError) as exc:
                log.warning("Could not unsubscribe from %s: %r", self.url, exc)
                # Calling unsubscribe again retries
                self.state = SubscriptionState.ERROR
                self.send_event(UnsubscribeFailed(sid, exc))
                return self
            else:
                # 412 means the renderer has already forgotten the sid, eg
                # after a reboot, which is what we wanted
                if response.status >= 300 and response.status != 412:
                    log.debug(
                        "UNSUBSCRIBE from %s answered with status %s",
                        self.url,
                        response.status,
                    )
                log.debug("Unsubscribed from %s, sid: %s", self.url, sid)
                event = Unsubscribed(sid)

            self.state = SubscriptionState.TERMINATED
            self.send_event(event)
            return self

    def _auto_renew_start(self, interval):
        """Arm the renewal timer."""
        self._auto_renew_cancel()
        self._auto_renew_task = asyncio.get_event_loop().call_later(
            max(interval, 0), self._auto_renew_run
        )

    def _auto_renew_run(self):
        self._auto_renew_task = None
        asyncio.ensure_future(self.renew())

    def _auto_renew_cancel(self):
        """Cancels the renewal timer."""
        if self._auto_renew_task:
            self._auto_renew_task.cancel()
            self._auto_renew_task = None

    async def _request(self, method, headers):
        """Sends an HTTP request to `url`.

        Args:
            method (str): 'SUBSCRIBE' or 'UNSUBSCRIBE'.
            headers (dict): A dict of headers, each key and each value being
                of type `str`.

        Returns:
            `aiohttp.ClientResponse`: The response, already released.
        """
        log.debug("Sending %s to %s: %s", method, self.url, headers)
        response = await self.event_listener.session.request(
            method, self.url, headers=headers
        )
        response.release()
        return response


event_listener = EventListener()  # pylint: disable=C0103
subscriptions_map = event_listener.subscriptions_map  # pylint: disable=C0103
