from __future__ import annotations

from xml.sax.saxutils import escape

import httpx
import pytest

from sonos_multiroom.services.errors import DeviceCommandError
from sonos_multiroom.services.sonos import SonosDevice, Track, gather_all, normalize_transport_state


def soap_response(action: str, **values: str) -> str:
    body = "".join(f"<{k}>{escape(v)}</{k}>" for k, v in values.items())
    return (
        '<?xml version="1.0"?>'
        '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/">'
        f'<s:Body><u:{action}Response xmlns:u="urn:schemas-upnp-org:service:AVTransport:1">'
        f"{body}</u:{action}Response></s:Body></s:Envelope>"
    )


FAULT = (
    '<?xml version="1.0"?>'
    '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"><s:Body><s:Fault>'
    "<faultcode>s:Client</faultcode><faultstring>UPnPError</faultstring>"
    '<detail><UPnPError xmlns="urn:schemas-upnp-org:control-1-0">'
    "<errorCode>701</errorCode><errorDescription>Transition not available</errorDescription>"
    "</UPnPError></detail></s:Fault></s:Body></s:Envelope>"
)

TOPOLOGY = (
    "<ZoneGroupState><ZoneGroups>"
    '<ZoneGroup Coordinator="RINCON_B" ID="RINCON_B:1">'
    '<ZoneGroupMember UUID="RINCON_A" Location="http://10.0.0.1:1400/xml/device_description.xml" ZoneName="Kitchen"/>'
    '<ZoneGroupMember UUID="RINCON_B" Location="http://10.0.0.2:1400/xml/device_description.xml" ZoneName="Living Room"/>'
    "</ZoneGroup>"
    "</ZoneGroups></ZoneGroupState>"
)

DIDL = (
    '<DIDL-Lite xmlns:dc="http://purl.org/dc/elements/1.1/" '
    'xmlns:upnp="urn:schemas-upnp-org:metadata-1-0/upnp/" '
    'xmlns="urn:schemas-upnp-org:metadata-1-0/DIDL-Lite/">'
    '<item id="-1" parentID="-1"><res>x-sonos-spotify:track</res>'
    "<dc:title>Song</dc:title><dc:creator>Artist</dc:creator><upnp:album>Album</upnp:album></item>"
    "</DIDL-Lite>"
)


class Recorder:
    """MockTransport handler answering SOAP actions from a dict."""

    def __init__(self, responses: dict) -> None:
        self.responses = responses
        self.requests: list[httpx.Request] = []

    def actions(self) -> list[str]:
        return [r.headers["SOAPACTION"].strip('"').rsplit("#", 1)[-1] for r in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        action = request.headers["SOAPACTION"].strip('"').rsplit("#", 1)[-1]
        response = self.responses.get(action)
        if response is None:
            return httpx.Response(200, text=soap_response(action))
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, text=response)


def make_driver(responses: dict) -> tuple[SonosDevice, Recorder]:
    recorder = Recorder(responses)
    return SonosDevice("10.0.0.1", transport=httpx.MockTransport(recorder)), recorder


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("PLAYING", "playing"),
        ("PAUSED_PLAYBACK", "paused"),
        ("STOPPED", "stopped"),
        ("NO_MEDIA_PRESENT", "stopped"),
        ("TRANSITIONING", "transitioning"),
        (None, "stopped"),
    ],
)
def test_normalize_transport_state(raw, expected):
    assert normalize_transport_state(raw) == expected


def test_line_in_track_masks_every_field():
    track = Track(uri="x-sonos-htastream:RINCON_B:spdif", title="Raw")

    assert track.is_line_in
    assert track.field("uri") == "TV"
    assert track.field("album") == "TV"
    assert Track(uri="x-sonos-spotify:track", title="Song").field("title") == "Song"


async def test_soap_request_shape():
    driver, recorder = make_driver({})

    await driver.set_volume(140)

    request = recorder.requests[0]
    assert str(request.url) == "http://10.0.0.1:1400/MediaRenderer/RenderingControl/Control"
    assert request.headers["SOAPACTION"] == '"urn:schemas-upnp-org:service:RenderingControl:1#SetVolume"'
    assert b"<DesiredVolume>100</DesiredVolume>" in request.content


async def test_upnp_fault_raises_device_command_error():
    driver, _ = make_driver({"Play": httpx.Response(500, text=FAULT)})

    with pytest.raises(DeviceCommandError) as excinfo:
        await driver.play()

    assert "UPnPError 701: Transition not available" in str(excinfo.value)
    assert excinfo.value.action == "Play"
    assert excinfo.value.host == "10.0.0.1"


async def test_unreachable_device_raises_device_command_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    driver = SonosDevice("10.0.0.1", transport=httpx.MockTransport(handler))

    with pytest.raises(DeviceCommandError):
        await driver.get_volume()


async def test_get_transport_state():
    driver, _ = make_driver({"GetTransportInfo": soap_response("GetTransportInfo", CurrentTransportState="PAUSED_PLAYBACK")})

    assert await driver.get_transport_state() == "paused"


async def test_current_track_parses_metadata():
    driver, _ = make_driver(
        {"GetPositionInfo": soap_response("GetPositionInfo", TrackURI="x-sonos-spotify:track", TrackMetaData=DIDL)}
    )

    track = await driver.current_track()

    assert track == Track(uri="x-sonos-spotify:track", title="Song", artist="Artist", album="Album")


async def test_current_track_empty():
    driver, _ = make_driver({"GetPositionInfo": soap_response("GetPositionInfo", TrackURI="", TrackMetaData="")})

    assert await driver.current_track() is None


async def test_join_group_targets_coordinator_of_zone():
    driver, recorder = make_driver({"GetZoneGroupState": soap_response("GetZoneGroupState", ZoneGroupState=TOPOLOGY)})

    await driver.join_group("living room")

    assert recorder.actions() == ["GetZoneGroupState", "SetAVTransportURI"]
    assert b"<CurrentURI>x-rincon:RINCON_B</CurrentURI>" in recorder.requests[1].content


async def test_join_group_unknown_zone():
    driver, recorder = make_driver({"GetZoneGroupState": soap_response("GetZoneGroupState", ZoneGroupState=TOPOLOGY)})

    with pytest.raises(DeviceCommandError):
        await driver.join_group("Garage")
    assert recorder.actions() == ["GetZoneGroupState"]


async def test_leave_group():
    driver, recorder = make_driver({})

    await driver.leave_group()

    assert recorder.actions() == ["BecomeCoordinatorOfStandaloneGroup"]


async def test_rendering_values():
    driver, _ = make_driver(
        {
            "GetVolume": soap_response("GetVolume", CurrentVolume="33"),
            "GetMute": soap_response("GetMute", CurrentMute="1"),
            "SetRelativeVolume": soap_response("SetRelativeVolume", NewVolume="38"),
            "GetLEDState": soap_response("GetLEDState", CurrentLEDState="Off"),
        }
    )

    assert await driver.get_volume() == 33
    assert await driver.get_muted() is True
    assert await driver.adjust_volume(5) == 38
    assert await driver.get_led_state() == "Off"


async def test_set_eq():
    driver, recorder = make_driver({})

    await driver.set_eq(eq_type="NightMode", value="1")

    assert b"<EQType>NightMode</EQType>" in recorder.requests[0].content
    assert b"<DesiredValue>1</DesiredValue>" in recorder.requests[0].content


async def test_favorites():
    driver, recorder = make_driver({"Browse": soap_response("Browse", Result=DIDL, NumberReturned="1")})

    favorites = await driver.get_favorites()

    assert favorites == [{"title": "Song", "artist": "Artist", "album": "Album", "uri": "x-sonos-spotify:track"}]
    assert b"<ObjectID>FV:2</ObjectID>" in recorder.requests[0].content


async def test_fetch_description_reports_capabilities():
    description = (
        '<root xmlns="urn:schemas-upnp-org:device-1-0"><device>'
        "<roomName>Living Room</roomName><modelName>Sonos Beam</modelName>"
        "<serialNum>00-11</serialNum><UDN>uuid:RINCON_B</UDN>"
        "<serviceList><service><serviceId>urn:upnp-org:serviceId:AudioIn</serviceId></service>"
        "<service><serviceId>urn:upnp-org:serviceId:HTControl</serviceId></service></serviceList>"
        "</device></root>"
    )
    driver = SonosDevice(
        "10.0.0.2", transport=httpx.MockTransport(lambda request: httpx.Response(200, text=description))
    )

    desc = await driver.fetch_description()

    assert desc["room_name"] == "Living Room"
    assert desc["uuid"] == "RINCON_B"
    assert desc["has_audio_in"] is True
    assert desc["has_ht_control"] is True


async def test_fetch_description_failure_returns_none():
    driver = SonosDevice("10.0.0.2", transport=httpx.MockTransport(lambda request: httpx.Response(404)))

    assert await driver.fetch_description() is None


def test_emit_isolates_failing_handlers():
    driver = SonosDevice("10.0.0.1")
    received = []

    def broken(*args):
        raise RuntimeError("boom")

    driver.on("PlayState", broken)
    driver.on("PlayState", received.append)
    driver.emit("PlayState", "playing")
    driver.off("PlayState", received.append)
    driver.emit("PlayState", "stopped")

    assert received == ["playing"]


async def test_gather_all_waits_for_every_operation():
    finished = []

    async def ok():
        finished.append("ok")

    async def fail():
        raise DeviceCommandError("nope")

    with pytest.raises(DeviceCommandError):
        await gather_all(fail(), ok())
    assert finished == ["ok"]
