from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from assistant.database import get_db
from assistant.schemas.message import MessageDetail, MessageListResponse, MessageOut, RespondRequest
from assistant.schemas.summary import JobResponse
from assistant.services.message_service import get_chat_messages, get_message_by_id
from assistant.services.queue_service import get_queue_registry

router = APIRouter(prefix="/messages")


@router.get("/message/{message_id}", response_model=MessageDetail)
def get_message(message_id: str, db: Session = Depends(get_db)):
    message = get_message_by_id(db, message_id)
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    return MessageDetail.model_validate(message)


@router.post("/message/{message_id}/respond", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
async def respond_to_message(message_id: str, payload: RespondRequest, db: Session = Depends(get_db)):
    """Queue an AI reply to a stored text message."""
    message = get_message_by_id(db, message_id)
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    if not (message.content or "").strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message has no text content")

    job = await get_queue_registry().add_text_response_job(
        {
            "messageId": message.message_id,
            "chatId": message.chat_id,
            "content": message.content,
            "context": {"chatId": message.chat_id, "senderId": message.sender_id, **payload.context},
        }
    )
    return JobResponse(
        job_id=job.id,
        queue=job.queue,
        job_type=job.job_type,
        status=job.status.value,
        attempts_made=job.attempts_made,
        progress=job.progress,
    )


@router.get("/{chat_id}", response_model=MessageListResponse)
def list_messages(
    chat_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    messages = get_chat_messages(db, chat_id, limit=limit, offset=offset)
    return MessageListResponse(
        chat_id=chat_id,
        count=len(messages),
        messages=[MessageOut.model_validate(m) for m in messages],
    )
