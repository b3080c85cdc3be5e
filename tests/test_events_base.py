"""Tests for the events_base module."""

from unittest import mock

import pytest

from conftest import DataLoader
from mediarenderer import config
from mediarenderer.events_base import (
    AttributeListPayload,
    Message,
    MetadataPayload,
    ResubscribeFailed,
    Subscribed,
    SubscriptionFailed,
    SubscriptionsMap,
    UnsubscribeFailed,
    classify_last_change,
    coerce_value,
    extract_last_change,
    get_listen_ip,
    parse_attribute_payload,
    parse_event_xml,
    parse_timeout,
)


def wrap_last_change(last_change):
    """Wrap an escaped LastChange value in an event body."""
    return (
        '<e:propertyset xmlns:e="urn:schemas-upnp-org:event-1-0">'
        "<e:property><LastChange>{}</LastChange></e:property>"
        "</e:propertyset>"
    ).format(last_change)


DATA_LOADER = DataLoader("events")
TRANSPORT_EVENT = DATA_LOADER.load_xml("transport_state.xml")

DIDL = (
    '<DIDL-Lite xmlns="urn:schemas-upnp-org:metadata-1-0/DIDL-Lite/"'
    ' xmlns:dc="http://purl.org/dc/elements/1.1/"'
    ' xmlns:upnp="urn:schemas-upnp-org:metadata-1-0/upnp/">'
    '<item id="{id}" parentID="-1" restricted="1">'
    "<dc:title>{title}</dc:title>"
    "<upnp:class>object.item.videoItem</upnp:class>"
    '<res protocolInfo="http-get:*:video/mp4:*" duration="0:10:00"'
    ' size="1024">http://192.168.1.10/{title}.mp4</res>'
    "</item></DIDL-Lite>"
)


def escape(text):
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


METADATA_LAST_CHANGE = (
    '<Event xmlns="urn:schemas-upnp-org:metadata-1-0/AVT/">'
    '<InstanceID val="0">'
    '<CurrentTrackMetaData val="{}"/>'
    '<AVTransportURIMetaData val="{}"/>'
    "</InstanceID></Event>"
).format(
    escape(DIDL.format(id=7, title="track")), escape(DIDL.format(id=8, title="source"))
)

METADATA_EVENT = wrap_last_change(escape(METADATA_LAST_CHANGE))


class TestParseEventXml:
    def test_flat_attribute_event(self):
        body = parse_event_xml(TRANSPORT_EVENT)
        assert body["TransportState"] == {"val": "PLAYING"}
        assert body["CurrentTransportActions"] == {"val": ["Play", "Stop", "Seek"]}
        assert body["NumberOfTracks"] == {"val": 12}
        assert body["TransportPlaySpeed"] == {"val": "1/2"}

    def test_durations_are_not_converted(self):
        body = parse_event_xml(TRANSPORT_EVENT)
        assert body["CurrentTrackDuration"] == {"val": "0:03:00"}
        assert body["CurrentMediaDuration"] == {"val": "01:02:03.500"}

    def test_bytes_body(self):
        body = parse_event_xml(TRANSPORT_EVENT.encode("utf-8"))
        assert body["TransportState"] == {"val": "PLAYING"}

    def test_metadata_event(self):
        body = parse_event_xml(METADATA_EVENT)
        assert set(body) == {"CurrentTrackMetaData", "AVTransportURIMetaData"}
        track = body["CurrentTrackMetaData"]
        # The resource is merged into the item
        assert "res" not in track
        assert track["dc:title"] == "track"
        assert track["id"] == 7
        assert track["protocolInfo"] == "http-get:*:video/mp4:*"
        assert track["duration"] == "0:10:00"
        assert track["size"] == 1024
        assert track["#text"] == "http://192.168.1.10/track.mp4"
        assert body["AVTransportURIMetaData"]["dc:title"] == "source"

    def test_inline_metadata(self):
        last_change = (
            '<Event><InstanceID val="0">'
            "<CurrentTrackMetaData>{}</CurrentTrackMetaData>"
            '<AVTransportURIMetaData val="{}"/>'
            "</InstanceID></Event>"
        ).format(
            DIDL.format(id=7, title="track"),
            escape(DIDL.format(id=8, title="source")),
        )
        body = parse_event_xml(wrap_last_change(escape(last_change)))
        assert body["CurrentTrackMetaData"]["dc:title"] == "track"
        assert body["CurrentTrackMetaData"]["#text"] == "http://192.168.1.10/track.mp4"
        assert body["AVTransportURIMetaData"]["dc:title"] == "source"

    def test_metadata_missing_group(self):
        last_change = (
            '<Event><InstanceID val="0">'
            '<CurrentTrackMetaData val="{}"/>'
            "</InstanceID></Event>"
        ).format(escape(DIDL.format(id=7, title="track")))
        assert parse_event_xml(wrap_last_change(escape(last_change))) is None

    def test_metadata_malformed(self):
        last_change = (
            '<Event><InstanceID val="0">'
            '<CurrentTrackMetaData val="&lt;DIDL-Lite&gt;"/>'
            '<AVTransportURIMetaData val=""/>'
            "</InstanceID></Event>"
        )
        assert parse_event_xml(wrap_last_change(escape(last_change))) is None

    @pytest.mark.parametrize(
        "xml_event",
        [
            "",
            "not xml",
            wrap_last_change(""),
            wrap_last_change("&lt;Event&gt;&lt;/Event&gt;"),
            wrap_last_change(
                "&lt;Event&gt;&lt;InstanceID&gt;"
                "&lt;TransportState val=&quot;PLAYING&quot;/&gt;"
                "&lt;/InstanceID&gt;&lt;/Event&gt;"
            ),
            '<e:propertyset xmlns:e="urn:schemas-upnp-org:event-1-0">'
            "<e:property><Volume>12</Volume></e:property>"
            "</e:propertyset>",
            '<e:propertyset xmlns:e="urn:schemas-upnp-org:event-1-0">'
            "<e:property><LastChange>one</LastChange>"
            "<LastChange>two</LastChange></e:property>"
            "</e:propertyset>",
        ],
    )
    def test_no_usable_data(self, xml_event):
        assert parse_event_xml(xml_event) is None


class TestExtractLastChange:
    def test_among_other_properties(self):
        xml_event = (
            '<e:propertyset xmlns:e="urn:schemas-upnp-org:event-1-0">'
            "<e:property><Volume>12</Volume></e:property>"
            "<e:property><LastChange>&lt;Event/&gt;</LastChange></e:property>"
            "</e:propertyset>"
        )
        assert extract_last_change(xml_event) == "<Event/>"

    def test_no_last_change(self):
        assert extract_last_change(wrap_last_change("")) is None

    def test_repeated_last_change(self):
        xml_event = (
            '<e:propertyset xmlns:e="urn:schemas-upnp-org:event-1-0">'
            "<e:property><LastChange>&lt;Event/&gt;</LastChange>"
            "<LastChange>&lt;Other/&gt;</LastChange></e:property>"
            "</e:propertyset>"
        )
        assert extract_last_change(xml_event) == "<Event/>"

    def test_last_change_without_text(self):
        xml_event = (
            '<e:propertyset xmlns:e="urn:schemas-upnp-org:event-1-0">'
            '<e:property><LastChange><Event val="1"/></LastChange></e:property>'
            "</e:propertyset>"
        )
        assert extract_last_change(xml_event) is None


class TestClassifyLastChange:
    def test_attribute_list(self):
        payload = classify_last_change(
            '<Event><InstanceID val="0"><TransportState val="STOPPED"/>'
            "</InstanceID></Event>"
        )
        assert isinstance(payload, AttributeListPayload)
        assert payload.fragment == 'TransportState val="STOPPED"'

    def test_metadata(self):
        payload = classify_last_change(METADATA_LAST_CHANGE)
        assert isinstance(payload, MetadataPayload)
        assert payload.fragment.startswith("CurrentTrackMetaData")

    def test_no_instance(self):
        assert classify_last_change("<Event/>") is None


class TestParseAttributePayload:
    def test_durations_stay_strings(self):
        result = parse_attribute_payload(
            'TransportState val="PLAYING"/><CurrentTrackDuration val="0:03:00"/>'
        )
        assert result == {
            "TransportState": {"val": "PLAYING"},
            "CurrentTrackDuration": {"val": "0:03:00"},
        }

    def test_transport_actions(self):
        result = parse_attribute_payload('CurrentTransportActions val="Play,Pause,Stop"/>')
        assert result == {"CurrentTransportActions": {"val": ["Play", "Pause", "Stop"]}}

    def test_numbers(self):
        result = parse_attribute_payload('Volume val="5"/><Brightness val="5.5"')
        assert result == {"Volume": {"val": 5}, "Brightness": {"val": "5.5"}}

    def test_groups_and_attributes(self):
        result = parse_attribute_payload(
            'TransportState val="PAUSED_PLAYBACK"/><Mute channel="Master" val="0"'
        )
        assert result == {
            "TransportState": {"val": "PAUSED_PLAYBACK"},
            "Mute": {"channel": "Master", "val": 0},
        }

    def test_attribute_without_value(self):
        result = parse_attribute_payload('PlaybackStorageMedium val="NETWORK" dummy')
        assert result == {"PlaybackStorageMedium": {"val": "NETWORK", "dummy": None}}

    def test_group_without_attributes(self):
        assert parse_attribute_payload("Empty") == {"Empty": {}}

    def test_quoted_value_with_spaces(self):
        result = parse_attribute_payload('CurrentTrackURI val="http://x/a b.mp4"')
        assert result == {"CurrentTrackURI": {"val": "http://x/a b.mp4"}}


class TestCoerceValue:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("42", 42),
            ("-3", -3),
            ("5.5", "5.5"),
            ("0:00:10", "0:00:10"),
            ("1:02:03.25", "1:02:03.25"),
            ("1920x1080", "1920x1080"),
            ("PLAYING", "PLAYING"),
            ("", ""),
        ],
    )
    def test_values(self, value, expected):
        assert coerce_value("Any", value) == expected

    def test_list_group(self):
        assert coerce_value("CurrentTransportActions", "Play,Pause") == [
            "Play",
            "Pause",
        ]
        assert coerce_value("CurrentTransportActions", "Play") == ["Play"]


@pytest.mark.parametrize(
    "header, expected",
    [
        ("Second-1800", 1800),
        ("second-300", 300),
        ("Second-infinite", 1000),
        ("", 1000),
        (None, 1000),
    ],
)
def test_parse_timeout(header, expected):
    assert parse_timeout(header, 1000) == expected


def test_event_kinds():
    assert Subscribed("uuid:1").kind == "subscribed"
    assert Message("uuid:1", {}).kind == "message"
    assert Message("uuid:1", {"a": {}}).body == {"a": {}}
    assert SubscriptionFailed(OSError()).kind == "error"
    assert ResubscribeFailed("uuid:1", OSError()).kind == "error:resubscribe"
    assert UnsubscribeFailed(None, OSError()).kind == "error:unsubscribe"


class TestSubscriptionsMap:
    def test_register_and_lookup(self):
        subscriptions = SubscriptionsMap()
        subscription = mock.Mock(sid="uuid:123")
        subscriptions.register(subscription)
        assert subscriptions.get_subscription("uuid:123") is subscription
        assert subscriptions.count == 1

    def test_unknown_sid(self):
        subscriptions = SubscriptionsMap()
        assert subscriptions.get_subscription("uuid:nope") is None
        assert subscriptions.get_subscription(None) is None

    def test_unregister(self):
        subscriptions = SubscriptionsMap()
        subscriptions.register(mock.Mock(sid="uuid:123"))
        subscriptions.unregister("uuid:123")
        # Unregistering twice is harmless
        subscriptions.unregister("uuid:123")
        assert subscriptions.get_subscription("uuid:123") is None
        assert subscriptions.count == 0


class TestGetListenIp:
    def test_configured_ip(self, monkeypatch):
        monkeypatch.setattr(config, "EVENT_LISTENER_IP", "10.0.0.5")
        assert get_listen_ip("192.168.1.50") == "10.0.0.5"

    @mock.patch("mediarenderer.events_base.socket.socket")
    def test_routing(self, mock_socket, monkeypatch):
        monkeypatch.setattr(config, "EVENT_LISTENER_IP", None)
        mock_socket.return_value.getsockname.return_value = ("192.168.1.10", 5555)
        assert get_listen_ip("192.168.1.50") == "192.168.1.10"
        mock_socket.return_value.connect.assert_called_once_with(
            ("192.168.1.50", 1900)
        )
        mock_socket.return_value.close.assert_called_once_with()

    @mock.patch("mediarenderer.events_base.ifaddr.get_adapters")
    @mock.patch("mediarenderer.events_base.socket.socket")
    def test_adapter_fallback(self, mock_socket, mock_adapters, monkeypatch):
        monkeypatch.setattr(config, "EVENT_LISTENER_IP", "0.0.0.0")
        mock_socket.return_value.connect.side_effect = OSError("unreachable")
        mock_adapters.return_value = [
            mock.Mock(ips=[mock.Mock(is_IPv4=True, ip="127.0.0.1")]),
            mock.Mock(
                ips=[
                    mock.Mock(is_IPv4=False, ip=("fe80::1", 0, 0)),
                    mock.Mock(is_IPv4=True, ip="192.168.1.11"),
                ]
            ),
        ]
        assert get_listen_ip("192.168.1.50") == "192.168.1.11"

    @mock.patch("mediarenderer.events_base.ifaddr.get_adapters", return_value=[])
    @mock.patch("mediarenderer.events_base.socket.socket")
    def test_nothing_found(self, mock_socket, _, monkeypatch):
        monkeypatch.setattr(config, "EVENT_LISTENER_IP", None)
        mock_socket.return_value.connect.side_effect = OSError("unreachable")
        assert get_listen_ip("192.168.1.50") is None
