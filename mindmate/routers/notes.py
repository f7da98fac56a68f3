# mindmate/routers/notes.py
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session, select

from mindmate.db import get_session
from mindmate.deps import get_current_user_email
from mindmate.models import Note
from mindmate.schemas import NoteIn, NotePatch, dump
from mindmate.utils.dates import utcnow

router = APIRouter(prefix="/notes", tags=["notes"])


def _note_or_404(session: Session, email: str, note_id: str) -> Note:
    note = session.get(Note, note_id)
    if not note or note.user_email != email or note.deleted_at is not None:
        raise HTTPException(status_code=404, detail="Note not found")
    return note


@router.get("")
def list_notes(
    limit: int = Query(100, ge=1, le=500),
    email: str = Depends(get_current_user_email),
    session: Session = Depends(get_session),
):
    rows = session.exec(
        select(Note)
        .where(Note.user_email == email)
        .where(Note.deleted_at == None)  # noqa: E711
        .order_by(Note.updated_at.desc())
        .limit(limit)
    ).all()
    return {"count": len(rows), "items": [dump(n) for n in rows]}


@router.post("", status_code=201)
def create_note(payload: NoteIn, email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    note = Note(user_email=email, **payload.model_dump())
    session.add(note)
    session.commit()
    session.refresh(note)
    return dump(note)


@router.get("/{note_id}")
def get_note(note_id: str, email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    return dump(_note_or_404(session, email, note_id))


@router.patch("/{note_id}")
def update_note(
    note_id: str,
    payload: NotePatch,
    email: str = Depends(get_current_user_email),
    session: Session = Depends(get_session),
):
    note = _note_or_404(session, email, note_id)
    for k, v in payload.model_dump(exclude_unset=True).items():
        setattr(note, k, v)
    note.updated_at = utcnow()
    session.add(note)
    session.commit()
    session.refresh(note)
    return dump(note)


@router.delete("/{note_id}")
def delete_note(note_id: str, email: str = Depends(get_current_user_email), session: Session = Depends(get_session)):
    note = _note_or_404(session, email, note_id)
    note.deleted_at = utcnow()
    session.add(note)
    session.commit()
    return {"ok": True}
