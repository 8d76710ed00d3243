"""
live_relay.schemas
~~~~~~~~~~~~~~~~~~
Pydantic schemas and models for the API.
"""
from live_relay.schemas.api_response import ApiResponse, WsFrame
from live_relay.schemas.live_events import (
    EventType,
    GiftEvent,
    GiftOutcome,
    JoinOptions,
    LiveEvent,
    RankingEntry,
    RecordingInfoData,
    SessionInfoData,
    SessionState,
    StatusPayload,
)

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
