from .authentication import TokenPayload, TokenResponse
from .requests import ActivityUpdateRequest, EnableChannelRequest, SaveTokenRequest
from .responses import ActivityUpdateResponse, ChannelListResponse, HealthDependency, HealthStatus

__all__ = [
    "TokenPayload",
    "TokenResponse",
    "ActivityUpdateRequest",
    "ActivityUpdateResponse",
    "EnableChannelRequest",
    "SaveTokenRequest",
    "ChannelListResponse",
    "HealthDependency",
    "HealthStatus",
]
