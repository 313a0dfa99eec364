from __future__ import annotations

import httpx
import pytest

from conftest import FAKE_JPEG, FAKE_PLY

from text2splat.clients.recon_client import ReconstructionClient
from text2splat.errors import ErrorKind, StageError


def _frames(tmp_path, n=3):
    paths = []
    for i in range(n):
        p = tmp_path / f"frame_{i:04d}.jpg"
        p.write_bytes(FAKE_JPEG)
        paths.append(p)
    return paths


def _client(handler, **kw):
    return ReconstructionClient(transport=httpx.MockTransport(handler), **kw)


def test_uploads_frames_in_order_and_writes_ply(tmp_path):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["type"] = request.headers["content-type"]
        seen["body"] = request.read()
        return httpx.Response(200, content=FAKE_PLY)

    dest = tmp_path / "out" / "output.ply"
    with _client(handler) as client:
        client.reconstruct(_frames(tmp_path), dest)

    assert seen["path"] == "/reconstruction"
    assert seen["type"].startswith("multipart/form-data")
    body = seen["body"]
    assert body.count(b'name="images"') == 3
    positions = [body.index(f'filename="frame_{i:04d}.jpg"'.encode()) for i in range(3)]
    assert positions == sorted(positions)
    assert b"Content-Type: image/jpeg" in body
    assert dest.read_bytes() == FAKE_PLY


def test_too_few_frames_is_a_bad_request(tmp_path):
    with _client(lambda r: httpx.Response(200, content=FAKE_PLY)) as client, pytest.raises(StageError) as err:
        client.reconstruct(_frames(tmp_path, 1), tmp_path / "output.ply")
    assert err.value.kind == ErrorKind.BAD_REQUEST


def test_missing_frame_file_is_a_bad_request(tmp_path):
    frames = _frames(tmp_path, 2)
    frames[1].unlink()

    with _client(lambda r: httpx.Response(200, content=FAKE_PLY)) as client, pytest.raises(StageError) as err:
        client.reconstruct(frames, tmp_path / "output.ply")
    assert err.value.kind == ErrorKind.BAD_REQUEST


@pytest.mark.parametrize(
    "status, kind",
    [
        (503, ErrorKind.SERVER_UNAVAILABLE),
        (502, ErrorKind.SERVER_UNAVAILABLE),
        (500, ErrorKind.TRANSIENT_NETWORK),
        (422, ErrorKind.BAD_REQUEST),
    ],
)
def test_server_errors_are_classified(tmp_path, status, kind):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"detail": "not enough matches between views"})

    with _client(handler) as client, pytest.raises(StageError) as err:
        client.reconstruct(_frames(tmp_path), tmp_path / "output.ply")
    assert err.value.kind == kind
    assert "not enough matches" in err.value.message
    assert not (tmp_path / "output.ply").exists()


def test_connection_refused_is_server_unavailable(tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with _client(handler) as client, pytest.raises(StageError) as err:
        client.reconstruct(_frames(tmp_path), tmp_path / "output.ply")
    assert err.value.kind == ErrorKind.SERVER_UNAVAILABLE
    assert err.value.retryable


def test_empty_response_is_transient(tmp_path):
    with _client(lambda r: httpx.Response(200, content=b"")) as client, pytest.raises(StageError) as err:
        client.reconstruct(_frames(tmp_path), tmp_path / "output.ply")
    assert err.value.kind == ErrorKind.TRANSIENT_NETWORK


def test_check_ready():
    def up(request):
        assert request.url.path == "/health"
        return httpx.Response(200, json={"status": "ok"})

    def refused(request):
        raise httpx.ConnectError("connection refused", request=request)

    with _client(up) as client:
        assert client.check_ready() is True
    with _client(lambda r: httpx.Response(503)) as client:
        assert client.check_ready() is False
    with _client(refused) as client:
        assert client.check_ready() is False
