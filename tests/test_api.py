"""
tests.test_api
~~~~~~~~~~~~~~

REST 与 WebSocket 端点集成测试。应用生命周期正常启动，
随后把会话管理器和录制流水线替换为使用假事件源 / 假编码器的实例。
"""
from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from live_relay.main import app
from live_relay.services.recording import RecordingPipeline
from live_relay.services.session_manager import SessionManager
from tests.conftest import ROOM_INFO, FakeEncoderFactory, FakeSourceFactory


@pytest.fixture()
def client(
    source_factory: FakeSourceFactory, encoder_factory: FakeEncoderFactory, tmp_path: Path,
) -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        hub = app.state.client_hub
        app.state.session_manager = SessionManager(source_factory, hub)
        app.state.recording_pipeline = RecordingPipeline(
            hub, recordings_dir=tmp_path, encoder_factory=encoder_factory, stop_timeout=1.0,
        )
        yield test_client


def receive_until(ws, event: str) -> dict:
    """读取下行帧直到出现指定事件。"""
    for _ in range(20):
        frame = ws.receive_json()
        if frame["event"] == event:
            return frame["data"]
    raise AssertionError(f"no {event} frame received")


class TestRest:

    def test_health(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["environment"] == "test"
        assert body["clients"] == 0

    def test_sessions_empty(self, client: TestClient) -> None:
        resp = client.get("/api/sessions")
        assert resp.status_code == 200
        assert resp.json() == {"code": 200, "data": [], "msg": "success"}

    def test_recordings_and_recover(self, client: TestClient, tmp_path: Path) -> None:
        (tmp_path / "alice-2026-10-19T20-30-05.mkv").write_bytes(b"\x1a\x45\xdf\xa3" + b"\x00" * 1024)

        listed = client.get("/api/recordings").json()["data"]
        assert [item["complete"] for item in listed] == [False]
        assert listed[0]["sizeBytes"] == 1028

        recovered = client.post("/api/recordings/recover").json()["data"]
        assert recovered == ["alice-2026-10-19T20-30-05.mp4"]
        listed = client.get("/api/recordings").json()["data"]
        assert [(item["filename"], item["complete"]) for item in listed] == [
            ("alice-2026-10-19T20-30-05.mp4", True),
        ]


class TestLiveWebSocket:

    def test_join_and_receive_events(self, client: TestClient, source_factory: FakeSourceFactory) -> None:
        with client.websocket_connect("/ws/live") as ws:
            ws.send_json({"event": "join", "data": {"target": "@alice", "options": {"enableAutoReconnect": False}}})

            assert ws.receive_json() == {
                "event": "status",
                "data": {"state": "connecting", "message": "Connecting to alice...", "target": "alice"},
            }
            assert receive_until(ws, "status")["state"] == "connected"
            assert receive_until(ws, "roomInfo") == ROOM_INFO

            sessions = client.get("/api/sessions").json()["data"]
            assert [(s["target"], s["state"]) for s in sessions] == [("alice", "connected")]

        # 断开连接后会话被关闭
        assert source_factory.last.disconnected is True
        assert client.get("/api/sessions").json()["data"] == []

    def test_join_with_plain_string(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/live") as ws:
            ws.send_json({"event": "join", "data": "bob"})
            assert receive_until(ws, "status")["target"] == "bob"

    def test_invalid_join_reports_error(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/live") as ws:
            ws.send_text("not json")  # 忽略
            ws.send_json({"event": "join", "data": {"target": "  "}})
            status = receive_until(ws, "status")
            assert status["state"] == "error"

    def test_start_recording_without_session(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/live") as ws:
            ws.send_json({"event": "startRecording", "data": {}})
            status = receive_until(ws, "recordingStatus")
            assert status["isRecording"] is False
            assert "No stream URL" in status["error"]

    def test_record_and_stop(self, client: TestClient, encoder_factory: FakeEncoderFactory, tmp_path: Path) -> None:
        with client.websocket_connect("/ws/live") as ws:
            ws.send_json({"event": "join", "data": {"target": "alice"}})
            receive_until(ws, "roomInfo")

            ws.send_json({"event": "startRecording", "data": {"quality": "480p"}})
            started = receive_until(ws, "recordingStatus")
            assert started["isRecording"] is True
            assert started["path"].startswith("alice-")
            assert encoder_factory.recorders[0].input_url == ROOM_INFO["stream_url"]["flv_pull_url"]["SD2"]

            ws.send_json({"event": "startRecording", "data": {}})
            rejected = receive_until(ws, "recordingStatus")
            assert rejected["isRecording"] is True
            assert "already in progress" in rejected["error"]

            ws.send_json({"event": "stopRecording"})
            saved = receive_until(ws, "recordingStatus")
            assert saved["message"] == "saved"

        assert [p.suffix for p in tmp_path.iterdir()] == [".mp4"]
