"""
Chat Routes for the OAP chatbot backend

Chats and their messages under /chats.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy import desc
from sqlalchemy.orm import Session, selectinload

from database import get_db_session
from models import Chat, Message

router = APIRouter(prefix="/chats", tags=["chats"])

RECENT_CHATS_LIMIT = 50
DEFAULT_CHAT_TITLE = "New Chat"


class CreateChatRequest(BaseModel):
    title: Optional[str] = None


class UpdateChatRequest(BaseModel):
    title: str


class AddMessageRequest(BaseModel):
    role: str
    content: str


def get_chat_or_404(db: Session, chat_id: str, with_messages: bool = False) -> Chat:
    query = db.query(Chat)
    if with_messages:
        query = query.options(selectinload(Chat.messages))
    chat = query.filter(Chat.id == chat_id).first()
    if not chat:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Chat with ID {chat_id} not found"
        )
    return chat


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_chat(
    request: Optional[CreateChatRequest] = None,
    db: Session = Depends(get_db_session)
):
    title = request.title if request else None
    chat = Chat(title=title or DEFAULT_CHAT_TITLE)
    db.add(chat)
    db.commit()
    db.refresh(chat)
    return chat.to_dict()


@router.get("")
async def get_chats(db: Session = Depends(get_db_session)):
    chats = (
        db.query(Chat)
        .order_by(desc(Chat.updated_at))
        .limit(RECENT_CHATS_LIMIT)
        .all()
    )
    return [chat.to_dict() for chat in chats]


@router.get("/{chat_id}")
async def get_chat(chat_id: str, db: Session = Depends(get_db_session)):
    chat = get_chat_or_404(db, chat_id, with_messages=True)
    return chat.to_dict(include_messages=True)


@router.post("/{chat_id}/messages", status_code=status.HTTP_201_CREATED)
async def add_message(
    chat_id: str,
    request: AddMessageRequest,
    db: Session = Depends(get_db_session)
):
    chat = get_chat_or_404(db, chat_id)

    # Touch the chat so it sorts as recently active
    chat.updated_at = datetime.utcnow()

    message = Message(chat_id=chat.id, role=request.role, content=request.content)
    db.add(message)
    db.commit()
    db.refresh(message)
    return message.to_dict()


@router.patch("/{chat_id}")
async def update_chat(
    chat_id: str,
    request: UpdateChatRequest,
    db: Session = Depends(get_db_session)
):
    chat = get_chat_or_404(db, chat_id)
    chat.title = request.title
    db.commit()
    db.refresh(chat)
    return chat.to_dict()


@router.delete("/{chat_id}")
async def delete_chat(chat_id: str, db: Session = Depends(get_db_session)):
    chat = get_chat_or_404(db, chat_id)
    data = chat.to_dict()
    db.delete(chat)
    db.commit()
    return data
