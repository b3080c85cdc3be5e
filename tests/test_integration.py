# pylint: disable-msg=too-few-public-methods, redefined-outer-name

"""This file contains integration tests which access a real renderer.

PLEASE TAKE NOTE: These tests must not interfere with whatever the renderer is
doing. They read its state, and only ever set a value to the one it already
has.
"""

import asyncio

import pytest

from mediarenderer import MediaRendererClient
from mediarenderer.events import Subscription, SubscriptionState

# Mark all tests in this module with the pytest custom "integration" marker so
# they can be selected or deselected as a whole, eg:
# py.test -m "integration"
# or
# py.test -m "not integration"
pytestmark = pytest.mark.integration


@pytest.fixture(scope="module")
def renderer(request):
    """The renderer given by the --url option."""
    url = request.config.option.URL
    if url is None:
        pytest.fail("No renderer url specified. Use the --url option.")
    return MediaRendererClient(url)


def test_description(renderer):
    description = renderer.get_device_description()
    assert "MediaRenderer" in description["deviceType"]
    assert renderer.get_service("AVTransport")["controlURL"]


def test_volume(renderer):
    volume = renderer.get_volume()
    assert 0 <= volume <= 100
    renderer.set_volume(volume)
    assert renderer.get_volume() == volume


def test_supported_protocols(renderer):
    protocols = renderer.get_supported_protocols()
    assert all(protocol["protocol"] for protocol in protocols)


def test_transport_info(renderer):
    info = renderer.get_transport_info()
    assert "CurrentTransportState" in info


@pytest.mark.asyncio
async def test_subscription(renderer):
    received = []
    first_event = asyncio.Event()

    def on_event(event):
        received.append(event)
        if event.kind == "message":
            first_event.set()

    subscription = await renderer.subscribe("AVTransport", on_event)
    assert isinstance(subscription, Subscription)
    assert subscription.state is SubscriptionState.ACTIVE
    # The renderer sends its full state as soon as it has subscribed us
    await asyncio.wait_for(first_event.wait(), 10)
    assert received[0].kind == "subscribed"
    await renderer.unsubscribe("AVTransport")
    assert subscription.state is SubscriptionState.TERMINATED
    assert received[-1].kind == "unsubscribed"
