"""
app.schemas
~~~~~~~~~~~
Pydantic schemas and models for the API.
"""
from app.schemas.api_response import ApiResponse
from app.schemas.chat_events import (
    ChatMessageData,
    ClientEvent,
    MemberJoinedData,
    ServerEvent,
    TypingChangedData,
)
from app.schemas.chat_rooms import (
    MessageCreateRequest,
    MessagePageData,
    PaginationData,
    RoomCreateRequest,
    RoomInfoData,
    StoredMessageData,
)

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
