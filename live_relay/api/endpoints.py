"""
live_relay.api.endpoints
~~~~~~~~~~~~~~~~~~~~~~~~

REST 接口 —— 会话与录制文件的查询、遗留录制的手动修复。

端点:
  - ``GET  /sessions``           → 当前所有会话
  - ``GET  /recordings``         → 录制目录中的文件列表
  - ``POST /recordings/recover`` → 立即修复遗留的中间文件
"""
from fastapi import APIRouter, Depends, Request

from live_relay.api.deps import get_recording_pipeline, get_session_manager
from live_relay.core.rate_limit import limiter
from live_relay.schemas.api_response import ApiResponse
from live_relay.schemas.live_events import RecordingInfoData, SessionInfoData
from live_relay.services.recording import RecordingPipeline
from live_relay.services.session_manager import SessionManager

router: APIRouter = APIRouter()


@router.get("/sessions", summary="获取会话列表", response_model=ApiResponse[list[SessionInfoData]])
@limiter.limit("10/second")
async def list_sessions(request: Request, manager: SessionManager = Depends(get_session_manager)):
    """返回所有客户端当前的会话摘要。"""
    return ApiResponse.ok(data=manager.list_sessions())


@router.get("/recordings", summary="获取录制文件列表", response_model=ApiResponse[list[RecordingInfoData]])
@limiter.limit("10/second")
async def list_recordings(
    request: Request,
    pipeline: RecordingPipeline = Depends(get_recording_pipeline),
):
    """返回录制目录中的文件，``complete=false`` 表示尚未转封装的中间文件。"""
    return ApiResponse.ok(data=pipeline.list_recordings())


@router.post("/recordings/recover", summary="修复遗留录制", response_model=ApiResponse[list[str]])
@limiter.limit("1/second")
async def recover_recordings(
    request: Request,
    pipeline: RecordingPipeline = Depends(get_recording_pipeline),
):
    """对没有交付文件的中间文件补做转封装，返回本次生成的文件名。

    转换进度通过 WebSocket ``conversionProgress`` 事件广播。
    """
    recovered = await pipeline.recover_orphans()
    return ApiResponse.ok(data=[path.name for path in recovered])
