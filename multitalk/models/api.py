from __future__ import annotations

from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .domain import Account, Job


class MediaPayload(BaseModel):
    filename: Optional[str] = None
    content_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("content_type", "mimetype"))
    data: Optional[str] = None


class VideoGenerationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Shape checks live in the lifecycle manager so the first bad field is reported by name.
    prompt: Optional[str] = Field(default=None, validation_alias="prompt")
    resolution: Optional[str] = Field(default=None, validation_alias="resolution")
    frame_num: Optional[int] = Field(default=None, validation_alias=AliasChoices("frame_num", "frameNum"))
    audio: Optional[MediaPayload] = Field(default=None, validation_alias="audio")
    image: Optional[MediaPayload] = Field(default=None, validation_alias="image")


class VideoGenerationResponse(BaseModel):
    success: bool = True
    video_id: str
    message: str = "Video generation started"
    job: Job


class JobResponse(BaseModel):
    job: Job


class WorkerResultRequest(BaseModel):
    status: str
    artifact_ref: Optional[str] = Field(default=None, validation_alias=AliasChoices("artifact_ref", "video_url"))
    error_detail: Optional[str] = Field(default=None, validation_alias=AliasChoices("error_detail", "error_message"))


class WorkerResultResponse(BaseModel):
    accepted: bool = True
    job: Job


class PaddleWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    alert_name: Optional[str] = None
    alert_id: Optional[str] = None
    user_id: Optional[str] = None
    subscription_plan_id: Optional[str] = None
    status: Optional[str] = None


class WebhookAck(BaseModel):
    received: bool = True


class JobListResponse(BaseModel):
    items: List[Job]


class AccountResponse(BaseModel):
    account: Account


class CheckoutRequest(BaseModel):
    plan_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("plan_id", "planId"))


class CheckoutResponse(BaseModel):
    success: bool = True
    subscription_id: str
    checkout_url: str
    price: float
    message: str = "Subscription created successfully"
