"""
Notes Routes for the OAP chatbot backend

Per-user note CRUD under /api/notes. The query helpers are shared with the
MCP listNotes tool.
"""

from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy import desc
from sqlalchemy.orm import Session

from auth_models import User
from auth_middleware import require_auth
from database import get_db_session
from models import Note

router = APIRouter(prefix="/api/notes", tags=["notes"])


class CreateNoteRequest(BaseModel):
    title: str
    content: Optional[str] = None


class UpdateNoteRequest(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None


# =============================================================================
# Helper Functions
# =============================================================================

def find_notes(db: Session, user_id: Optional[str] = None) -> List[Note]:
    """All notes, or one user's notes, most recently updated first."""
    query = db.query(Note)
    if user_id:
        query = query.filter(Note.user_id == user_id)
    return query.order_by(desc(Note.updated_at)).all()


def find_user_note(db: Session, note_id: str, user_id: str) -> Optional[Note]:
    return db.query(Note).filter(Note.id == note_id, Note.user_id == user_id).first()


def format_notes(notes: List[Note]) -> str:
    """Render notes as a numbered markdown list for tool output."""
    if not notes:
        return "You have no notes."
    return "\n\n".join(
        f"{i}. **{note.title or 'Untitled'}**\n   {note.content or '(no content)'}"
        for i, note in enumerate(notes, start=1)
    )


def _require_note(db: Session, note_id: str, user: User) -> Note:
    note = find_user_note(db, note_id, user.id)
    if not note:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Note with ID {note_id} not found"
        )
    return note


# =============================================================================
# Routes
# =============================================================================

@router.get("")
async def get_my_notes(
    user: User = Depends(require_auth),
    db: Session = Depends(get_db_session)
):
    notes = find_notes(db, user.id)
    return {"data": [note.to_dict() for note in notes]}


@router.get("/{note_id}")
async def get_note(
    note_id: str,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db_session)
):
    note = find_user_note(db, note_id, user.id)
    return {"data": note.to_dict() if note else None}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_note(
    request: CreateNoteRequest,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db_session)
):
    note = Note(
        title=request.title,
        content=request.content or "",
        user_id=user.id,
    )
    db.add(note)
    db.commit()
    db.refresh(note)
    return {"data": note.to_dict(), "message": "Note created successfully"}


@router.patch("/{note_id}")
async def update_note(
    note_id: str,
    request: UpdateNoteRequest,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db_session)
):
    note = _require_note(db, note_id, user)

    # Only fields present in the body are changed
    for field, value in request.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(note, field, value)
    db.commit()
    db.refresh(note)
    return {"data": note.to_dict(), "message": "Note updated"}


@router.delete("/{note_id}")
async def delete_note(
    note_id: str,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db_session)
):
    note = _require_note(db, note_id, user)
    db.delete(note)
    db.commit()
    return {"message": "Note deleted"}
