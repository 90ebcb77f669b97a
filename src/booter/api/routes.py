"""API route handlers for the bootstrap control endpoints."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from booter.api.models import ErrorResponse, StatusData, StatusResponse, SuccessResponse
from booter.errors import ChannelError, NotInTargetError
from booter.models.signal import SignalKind
from booter.models.status import PhaseEnum

router = APIRouter(prefix="/api/v1.0")


@router.get("/status", response_model=StatusResponse)
async def get_status(request: Request):
    """GET /api/v1.0/status - Query the current phase.

    Response format:
        {
            "code": 200,
            "msg": "success",
            "data": {
                "phase": "target",
                "boot_time": "2026-10-18T09:12:44",
                "last_image_url": "http://images.lan/debian.tar.gz",
                "target_pid": 1,
                "text": "phase=target\\n..."
            }
        }
    """
    state = request.app.state.reader.get()
    data = StatusData(
        phase=state.phase,
        boot_time=state.boot_time,
        last_image_url=state.last_image_url,
        target_pid=state.target_pid,
        text=state.to_status_text(),
    )
    return StatusResponse(code=200, msg="success", data=data)


@router.post("/return", response_model=SuccessResponse)
async def post_return(request: Request):
    """POST /api/v1.0/return - Ask the return handler to go back to Bootstrap.

    The request is queued on the control channel; poll /status to see the
    phase change.

    Returns:
        SuccessResponse once the signal is written

    Error codes (HTTP status is always 200):
        409 if Bootstrap is already live
        503 if nobody is reading the control channel
    """
    phase = request.app.state.reader.phase()
    if phase == PhaseEnum.BOOTSTRAP:
        error = NotInTargetError("Already in bootstrap")
        return JSONResponse(
            status_code=200,
            content=ErrorResponse(code=409, msg=str(error), phase=phase).model_dump(mode="json"),
        )

    try:
        request.app.state.bus.send(SignalKind.RETURN, "api")
    except ChannelError as e:
        return JSONResponse(
            status_code=200,
            content=ErrorResponse(code=503, msg=str(e), phase=phase).model_dump(mode="json"),
        )

    return JSONResponse(
        status_code=200,
        content={"code": 200, "msg": "success", "data": None},
    )
