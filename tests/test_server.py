import asyncio
import json

import numpy as np
import pytest

from core.scene import TreeScene
from core.state_machine import Mode
from server import GestureTreeServer, WebSocketMessage


class FakeWebSocket:
    def __init__(self):
        self.sent = []

    async def send(self, message):
        self.sent.append(json.loads(message))


@pytest.fixture
def server(small_config):
    scene = TreeScene(small_config, np.random.default_rng(0))
    return GestureTreeServer(small_config, scene)


def test_message_round_trip():
    msg = WebSocketMessage(type="ping", timestamp=1.0, data={"a": 1})
    assert WebSocketMessage.from_json(msg.to_json()) == msg


@pytest.mark.parametrize("raw", ["{oops", "[]", '{"data": {}}', '{"type": "x", "data": [1]}'])
def test_malformed_messages_are_rejected(raw):
    with pytest.raises(ValueError):
        WebSocketMessage.from_json(raw)


def test_ping(server):
    reply = server.apply_control("ping", {})
    assert reply.type == "pong"


def test_close_letter(server):
    server.scene.state_machine.open_letter(0)
    assert server.apply_control("close_letter", {}) is None
    assert server.scene.context.mode is Mode.TREE


def test_set_theme(server):
    server.apply_control("set_theme", {"theme": 1})
    assert server.scene.engine.background_layer == "snowfall"


def test_set_glyph_text(server):
    reply = server.apply_control("set_glyph_text", {"text": "OK"})
    assert reply.type == "glyph_updated"
    assert reply.data["members"] == server.scene.engine.glyph.member_count
    assert server.scene.glyph_text == "OK"


def test_photos(server):
    count = len(server.scene.engine)
    reply = server.apply_control("add_photo", {"aspect": 0.75, "url": "a.jpg"})
    assert reply.type == "particles_changed"
    assert len(reply.data["particles"]) == count + 1

    photo = reply.data["particles"][-1]
    assert photo["kind"] == "photo"
    assert photo["meta"] == {"url": "a.jpg", "aspect": 0.75}

    reply = server.apply_control("clear_photos", {})
    assert len(reply.data["particles"]) == count


def test_unknown_type_is_ignored(server):
    assert server.apply_control("dance", {}) is None


def test_bad_messages_keep_connection(server):
    ws = FakeWebSocket()

    async def exchange():
        await server._handle_message(ws, "{not json")
        await server._handle_message(ws, '{"type": "set_theme", "data": {}}')
        await server._handle_message(ws, '{"type": "set_theme", "data": {"theme": "x"}}')
        await server._handle_message(ws, '{"type": "ping"}')

    asyncio.run(exchange())
    assert [m["type"] for m in ws.sent] == ["pong"]


def test_frame_message(server, poses):
    snapshot = server.scene.step(poses.palm_open(), 0.0, 1 / 30)
    msg = server._frame_message(1, 0.0, snapshot)
    data = json.loads(msg.to_json())

    assert data["type"] == "frame_data"
    assert data["data"]["mode"] == "scatter"
    assert data["data"]["gesture"] == "palm_open"
    assert len(data["data"]["scene"]["positions"]) == len(server.scene.engine)


def test_mode_events_are_broadcast(server, poses):
    ws = FakeWebSocket()
    server._clients.add(ws)

    async def frame():
        server.scene.step(poses.palm_open(), 0.0, 1 / 30)
        await asyncio.sleep(0.01)

    asyncio.run(frame())
    events = [m for m in ws.sent if m["type"] == "mode_event"]
    assert events[0]["data"]["event_type"] == "mode_changed"
    assert events[0]["data"]["mode"] == "scatter"
