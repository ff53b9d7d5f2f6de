from assistant.models.group_summary import GroupSummary
from assistant.models.message import Message
from assistant.models.processed_media import ProcessedMedia

__all__ = [
    "Message",
    "ProcessedMedia",
    "GroupSummary",
]
