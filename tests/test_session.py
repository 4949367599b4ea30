"""
Tests de RouterOSSession contra el MikroTik simulado
"""
import asyncio
from unittest.mock import MagicMock

import pytest

from ispcore.cancellation import CancelToken
from ispcore.errors import (
    ConnectError, DeviceError, ErrorKind, InvalidInputError, OperationCancelled, SessionClosedError,
    TransportError,
)
from ispcore.config import Settings
from ispcore.services.routeros import transport as transport_module
from ispcore.services.routeros.factory import SessionFactory
from ispcore.services.routeros.session import SessionState, build_sentence, parse_words
from ispcore.services.routeros.transport import DeviceCredentials, LibrouterosTransport
from tests.util import device_stub, wait_until


@pytest.fixture
async def session(factory):
    s = await factory.open(device_stub())
    yield s
    await s.close()


def test_sentence_encoding_keeps_equals_in_values():
    words = build_sentence("/ppp/secret/add", {"name": "juan", "comment": "a=b"}, "7")
    assert words == ["/ppp/secret/add", "=name=juan", "=comment=a=b", ".tag=7"]

    attrs, tag = parse_words(words[1:])
    assert attrs == {"name": "juan", "comment": "a=b"}
    assert tag == "7"


async def test_run_add_and_print(session, router):
    reply = await session.run("/ppp/profile/add", {"name": "10M", "rate-limit": "2000k/10000k"})
    assert reply.created_handle() == "*1"
    assert router.args_of("/ppp/profile/add") == [{"name": "10M", "rate-limit": "2000k/10000k"}]

    listing = await session.run("/ppp/profile/print")
    assert [row["name"] for row in listing.re] == ["10M"]
    assert listing.re[0][".id"] == "*1"


async def test_legacy_after_field(session, router):
    router.done_key = "after"
    reply = await session.run("/queue/simple/add", {"name": "q1", "target": "10.0.0.5/32"})
    assert reply.done == {"after": "*1"}
    assert reply.created_handle() == "*1"


async def test_trap_becomes_device_error(session, router):
    router.traps["/ppp/profile/add"] = "name already in use"
    with pytest.raises(DeviceError) as exc:
        await session.run("/ppp/profile/add", {"name": "10M"})
    assert exc.value.kind == ErrorKind.DEVICE_ERROR
    assert exc.value.message == "name already in use"
    assert exc.value.annotations[-1]["command"] == "/ppp/profile/add"
    # Un trap no rompe la sesión
    assert session.is_ready
    await session.run("/ppp/profile/print")


async def test_run_on_closed_session_does_no_io(session, router):
    await session.close()
    calls_before = len(router.calls)
    with pytest.raises(SessionClosedError) as exc:
        await session.run("/ppp/profile/print")
    assert exc.value.kind == ErrorKind.CLOSED
    assert len(router.calls) == calls_before


async def test_close_is_idempotent(session, router):
    await session.close()
    await session.close()
    assert session.state == SessionState.CLOSED
    assert router.open_transports == []


async def test_connect_failure(factory, router):
    router.unreachable.add("10.9.9.9")
    with pytest.raises(ConnectError) as exc:
        await factory.open(device_stub(host="10.9.9.9"))
    assert exc.value.kind == ErrorKind.TRANSPORT
    assert "10.9.9.9" in exc.value.message


async def test_fatal_fails_pending_calls_and_session(session, router):
    router.hang.add("/system/reboot")
    task = asyncio.create_task(session.run("/system/reboot"))
    await wait_until(lambda: "/system/reboot" in router.commands())

    router.transports[0].push(["!fatal", "session terminated on request"])
    with pytest.raises(TransportError) as exc:
        await task
    assert exc.value.kind == ErrorKind.TRANSPORT
    assert session.state == SessionState.FAILED

    with pytest.raises(SessionClosedError):
        await session.run("/ppp/profile/print")


async def test_cancel_during_run_tears_down_session(session, router):
    router.hang.add("/tool/fetch")
    cancel = CancelToken()
    task = asyncio.create_task(session.run("/tool/fetch", {"url": "http://x"}, cancel))
    await wait_until(lambda: "/tool/fetch" in router.commands())

    cancel.cancel()
    with pytest.raises(OperationCancelled) as exc:
        await task
    assert exc.value.kind == ErrorKind.CANCELLED
    assert session.state == SessionState.CLOSED
    assert router.open_transports == []


async def test_listen_and_run_share_the_socket(session, router):
    stream = await session.listen("/ppp/secret/listen")
    await wait_until(lambda: router.listening("/ppp/secret") == 1)

    reply = await session.run("/ppp/secret/add", {"name": "juan", "password": "x"})
    frame = await asyncio.wait_for(stream.__anext__(), 2)
    assert frame[".id"] == reply.created_handle()
    assert frame["name"] == "juan"

    await stream.aclose()
    assert router.listening("/ppp/secret") == 0
    assert "/cancel" in router.commands()
    assert session.is_ready


async def test_listen_drops_oldest_frames_when_behind(factory, router):
    factory.queue_size = 2
    session = await factory.open(device_stub())
    async with session:
        stream = await session.listen("/interface/listen")
        await wait_until(lambda: router.listening("/interface") == 1)
        for i in range(5):
            router.emit("/interface", {".id": "*1", "rx-byte": str(i)})

        await wait_until(lambda: stream.lag == 3)
        received = [await stream.__anext__(), await stream.__anext__()]
        assert [f["rx-byte"] for f in received] == ["3", "4"]
        await stream.aclose()


async def test_listen_ends_when_session_closes(session, router):
    stream = await session.listen("/ppp/active/listen")
    await wait_until(lambda: router.listening("/ppp/active") == 1)

    frames = []

    async def consume():
        async for frame in stream:
            frames.append(frame)

    task = asyncio.create_task(consume())
    router.emit("/ppp/active", {".id": "*5", "name": "juan"})
    await wait_until(lambda: len(frames) == 1)

    await session.close()
    await asyncio.wait_for(task, 2)
    assert frames == [{".id": "*5", "name": "juan"}]


# ================================================================
# CODIFICACIÓN DE PALABRAS
# ================================================================

async def test_non_ascii_values_are_sent_as_utf8(session, router):
    reply = await session.run("/ppp/secret/add", {"name": "jose", "comment": "José Peña - Cañada"})
    assert router.transports[0].credentials.encoding == "utf-8"
    assert router.get("/ppp/secret", reply.created_handle())["comment"] == "José Peña - Cañada"


async def test_unencodable_value_is_invalid_input_and_session_survives(factory, router):
    factory.encoding = "ascii"
    session = await factory.open(device_stub())
    async with session:
        with pytest.raises(InvalidInputError) as exc:
            await session.run("/ppp/secret/add", {"name": "jose", "comment": "José"})
        assert exc.value.kind == ErrorKind.INVALID_INPUT
        assert exc.value.annotations[-1]["command"] == "/ppp/secret/add"
        assert "/ppp/secret/add" not in router.commands()
        assert session._pending == {}
        assert session.is_ready

        with pytest.raises(InvalidInputError):
            await session.listen("/ppp/secret/listen", {"comment": "Peña"})
        assert session._pending == {}

        listing = await session.run("/ppp/secret/print")
        assert listing.re == []


def test_librouteros_transport_passes_encoding(monkeypatch):
    captured = {}

    def fake_connect(**kwargs):
        captured.update(kwargs)
        return MagicMock()

    monkeypatch.setattr(transport_module, "connect", fake_connect)
    credentials = DeviceCredentials.from_device(device_stub(), encoding="latin-1")
    LibrouterosTransport.open(credentials)
    assert captured["encoding"] == "latin-1"


def test_factory_takes_encoding_from_settings():
    factory = SessionFactory.from_settings(Settings(MIKROTIK_ENCODING="latin-1"))
    assert factory.encoding == "latin-1"
    assert Settings().MIKROTIK_ENCODING == "utf-8"


async def test_close_waits_for_write_lock_before_cancelling_listens(session, router):
    await session.listen("/ppp/secret/listen")
    await wait_until(lambda: router.listening("/ppp/secret") == 1)

    await session._write_lock.acquire()
    closing = asyncio.create_task(session.close())
    await asyncio.sleep(0.05)
    # Mientras otra escritura tenga el socket, /cancel no sale
    assert "/cancel" not in router.commands()
    session._write_lock.release()

    await asyncio.wait_for(closing, 2)
    assert "/cancel" in router.commands()
    assert router.listening("/ppp/secret") == 0
    assert session.state == SessionState.CLOSED
