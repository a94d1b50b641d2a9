"""
Tests du canal hôte : corrélation requête/réponse, timeouts, dispatch des événements.
"""
import asyncio
import base64
import json

import pytest

from core.errors import HostError, RoundTripTimeout
from core.host import HostChannel, encode_bytes


class FakeWriter:
    def __init__(self):
        self.lines = []

    def write(self, data):
        self.lines.append(data.decode("utf-8"))

    @property
    def messages(self):
        return [json.loads(line) for line in self.lines]


class FakeReader:
    def __init__(self, lines):
        self._lines = [line.encode() + b"\n" for line in lines]

    async def readline(self):
        if not self._lines:
            return b""
        return self._lines.pop(0)


def test_request_resolves_with_matching_response():
    async def scenario():
        writer = FakeWriter()
        host = HostChannel(writer, timeout=1)
        task = asyncio.create_task(host.request("uploadFile", room="r1", data="eA=="))
        await asyncio.sleep(0)
        sent = writer.messages[-1]
        assert sent["method"] == "uploadFile"
        assert sent["room"] == "r1"
        host.handle_line(json.dumps({"type": "uploadResult", "ref": sent["ref"], "ok": True, "fileId": 9}))
        result = await task
        return result, host.pending

    result, pending = asyncio.run(scenario())
    assert result["fileId"] == 9
    assert pending == {}


def test_responses_are_matched_out_of_order():
    async def scenario():
        writer = FakeWriter()
        host = HostChannel(writer, timeout=1)
        first = asyncio.create_task(host.request("sendMessage", room="r"))
        second = asyncio.create_task(host.request("sendMessage", room="r"))
        await asyncio.sleep(0)
        ref1, ref2 = (m["ref"] for m in writer.messages)
        assert ref1 != ref2
        host.handle_line(json.dumps({"ref": ref2, "ok": True, "messageId": 2}))
        host.handle_line(json.dumps({"ref": ref1, "ok": True, "messageId": 1}))
        return await first, await second

    first, second = asyncio.run(scenario())
    assert first["messageId"] == 1
    assert second["messageId"] == 2


def test_request_times_out_and_forgets_token():
    async def scenario():
        host = HostChannel(FakeWriter(), timeout=0.01)
        with pytest.raises(RoundTripTimeout):
            await host.request("uploadFile", room="r")
        return host.pending

    assert asyncio.run(scenario()) == {}


def test_late_response_is_ignored():
    async def scenario():
        writer = FakeWriter()
        host = HostChannel(writer, timeout=0.01)
        with pytest.raises(RoundTripTimeout):
            await host.request("sendMessage", room="r")
        ref = writer.messages[-1]["ref"]
        assert host.handle_line(json.dumps({"ref": ref, "ok": True})) is None

    asyncio.run(scenario())


def test_refused_request_raises_host_error():
    async def scenario():
        writer = FakeWriter()
        host = HostChannel(writer, timeout=1)
        task = asyncio.create_task(host.request("uploadFile", room="r"))
        await asyncio.sleep(0)
        host.handle_line(json.dumps({"ref": writer.messages[-1]["ref"], "ok": False, "error": "too big"}))
        with pytest.raises(HostError) as info:
            await task
        return info.value

    err = asyncio.run(scenario())
    assert not isinstance(err, RoundTripTimeout)
    assert err.detail == "too big"


def test_events_are_dispatched_with_legacy_names():
    seen = []

    async def scenario():
        host = HostChannel(FakeWriter())

        @host.event("userVisible")
        async def on_visible(payload):
            seen.append(("visible", payload["user"]["id"]))

        @host.event("onBeforePost")
        async def on_post(payload):
            seen.append(("post", payload["replyToken"]))

        host.handle_line(json.dumps({"type": "onRecentMessagesRequest", "payload": {"user": {"id": 1}}}))
        host.handle_line(json.dumps({"type": "beforePost", "replyToken": "t1", "message": {}}))
        await host.wait_idle()

    asyncio.run(scenario())
    assert sorted(seen) == [("post", "t1"), ("visible", 1)]


def test_handler_failure_does_not_stop_channel(caplog):
    async def scenario():
        host = HostChannel(FakeWriter())
        calls = []

        @host.event("userVisible")
        async def on_visible(payload):
            calls.append(payload)
            raise KeyError("id")

        host.handle_line(json.dumps({"type": "userVisible", "payload": {}}))
        host.handle_line("not json")
        host.handle_line("[1, 2]")
        host.handle_line(json.dumps({"type": "userVisible", "payload": {}}))
        await host.wait_idle()
        return calls

    assert len(asyncio.run(scenario())) == 2
    assert "Echec traitement événement userVisible" in caplog.text


def test_run_reads_until_eof():
    seen = []

    async def scenario():
        host = HostChannel(FakeWriter())

        @host.event("load")
        async def on_load(payload):
            seen.append(payload["server"]["pk"])

        reader = FakeReader([json.dumps({"type": "load", "payload": {"rooms": [], "server": {"pk": "aa"}}})])
        await host.run(reader)
        await host.wait_idle()

    asyncio.run(scenario())
    assert seen == ["aa"]


def test_close_fails_outstanding_requests():
    async def scenario():
        host = HostChannel(FakeWriter(), timeout=5)
        task = asyncio.create_task(host.request("sendMessage", room="r"))
        await asyncio.sleep(0)
        host.close()
        with pytest.raises(HostError):
            await task
        with pytest.raises(HostError):
            await host.notify("deleteMessage", room="r", messageId=1)

    asyncio.run(scenario())


def test_reply_and_bytes_encoding():
    async def scenario():
        writer = FakeWriter()
        host = HostChannel(writer)
        await host.reply("tok", ok=True, action="drop")
        return writer.messages

    assert asyncio.run(scenario()) == [{"ref": "tok", "ok": True, "action": "drop"}]
    assert base64.b64decode(encode_bytes(b"\x00\xffimg")) == b"\x00\xffimg"
