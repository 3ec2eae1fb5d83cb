"""Request bodies. Field names follow the JSON the web and mobile clients send."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId", min_length=1)


class HeartbeatRequest(BaseModel):
    """Either a bearer session token or a heartbeat token from a tool call."""

    model_config = ConfigDict(populate_by_name=True)

    session_token: Optional[str] = Field(None, alias="sessionToken", min_length=1)
    heartbeat_token: Optional[str] = Field(None, alias="heartbeatToken", min_length=1)
    timestamp: float

    @model_validator(mode="after")
    def require_token(self):
        if not self.session_token and not self.heartbeat_token:
            raise ValueError("sessionToken or heartbeatToken is required")
        return self


class EndSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_token: str = Field(..., alias="sessionToken", min_length=1)


class LimitsUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enabled: Optional[bool] = None
    max_concurrent_sessions: Optional[int] = Field(None, alias="maxConcurrentSessions", ge=0)
