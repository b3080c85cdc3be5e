"""This module contains configuration variables.

They may be set by your code as follows::

    from mediarenderer import config
    ...
    config.VARIABLE = value
"""

EVENT_ADVERTISE_IP = None
"""The IP to advertise to renderers in the ``CALLBACK`` header.

The default of None means that the relevant IP address will be detected
automatically.

See also:
    The :mod:`mediarenderer.events_base` module.
"""

EVENT_LISTENER_IP = None
"""The interface on which the event listener listens.

The default of None means that the listener accepts connections on all
interfaces.

See also:
    The :mod:`mediarenderer.events` module.
"""

EVENT_LISTENER_PORT = 0
"""The port on which the event listener listens.

The default of 0 lets the operating system choose a free port when the
listener is first started. You must set this before subscribing to any
events.
"""

DEFAULT_SUBSCRIPTION_TIMEOUT = 1800
"""The subscription duration (in seconds) requested when none is given."""

UNSUBSCRIBE_TIMEOUT = 3
"""How long (in seconds) to wait for a renderer to answer an ``UNSUBSCRIBE``.

A renderer which does not answer in time is treated as unsubscribed, since
its side of the subscription will lapse anyway.
"""

REQUEST_TIMEOUT = 20.0
"""The timeout (in seconds) used when sending control actions to a renderer
and when fetching its device description.

It can be a float, an int, or None. If set to 'None', calls can potentially
wait indefinitely.
"""

CONTROL_POINT_NAME = None
"""An optional public name for this control point.

If set, it is sent as the ``User-Agent`` of control requests. See
:meth:`mediarenderer.core.MediaRendererClient.set_control_point_name`.
"""
