from fastapi import Request

from live_relay.services.client_hub import ClientHub
from live_relay.services.recording import RecordingPipeline
from live_relay.services.session_manager import SessionManager


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


def get_recording_pipeline(request: Request) -> RecordingPipeline:
    return request.app.state.recording_pipeline


def get_client_hub(request: Request) -> ClientHub:
    return request.app.state.client_hub
