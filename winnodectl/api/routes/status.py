from typing import List

from fastapi import APIRouter, Request
from pydantic import BaseModel

from winnodectl import version

router = APIRouter()


class ConditionModel(BaseModel):
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: str = ""


class StatusResponse(BaseModel):
    version: str
    conditions: List[ConditionModel]


@router.get("/healthz")
def healthz():
    return {"status": "ok"}


@router.get("/status", response_model=StatusResponse)
def operator_status(request: Request):
    """Current operator conditions as tracked by the controllers."""
    status = request.app.state.status
    return StatusResponse(version=version.get(), conditions=status.to_dict()["conditions"])
