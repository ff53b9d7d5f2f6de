from assistant.schemas.message import MessageDetail, MessageListResponse, MessageOut
from assistant.schemas.summary import SummaryListResponse, SummaryOut
from assistant.schemas.webhook import WebhookEvent, WebhookResponse

__all__ = [
    "MessageDetail",
    "MessageListResponse",
    "MessageOut",
    "SummaryListResponse",
    "SummaryOut",
    "WebhookEvent",
    "WebhookResponse",
]
