"""
Trading Notes
Folders, notes and tags. Notes can link to a trade.
"""
from fastapi import APIRouter, HTTPException, Depends
from sqlalchemy.orm import Session
from sqlalchemy import or_
from pydantic import BaseModel
from typing import Optional
import logging

from database import get_db
import models
import auth

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notes", tags=["notes"])

DEFAULT_FOLDERS = [
    {"name": "All Notes", "icon": "📝", "color": "#64748b"},
    {"name": "Trade Notes", "icon": "💹", "color": "#22c55e"},
    {"name": "Daily Journal", "icon": "📔", "color": "#3b82f6"},
    {"name": "Sessions Recap", "icon": "📊", "color": "#f59e0b"},
]


class FolderCreate(BaseModel):
    name: str
    icon: Optional[str] = None
    color: Optional[str] = None

class FolderUpdate(BaseModel):
    name: Optional[str] = None
    icon: Optional[str] = None
    color: Optional[str] = None

class NoteCreate(BaseModel):
    title: str
    content: Optional[str] = None
    folder_id: int
    trade_id: Optional[int] = None

class NoteUpdate(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    folder_id: Optional[int] = None
    trade_id: Optional[int] = None

class TagCreate(BaseModel):
    name: str
    color: str

class TagUpdate(BaseModel):
    name: Optional[str] = None
    color: Optional[str] = None


def serialize_folder(f: models.Folder) -> dict:
    return {"id": f.id, "name": f.name, "icon": f.icon, "color": f.color, "is_default": bool(f.is_default)}


def serialize_tag(t: models.Tag) -> dict:
    return {"id": t.id, "name": t.name, "color": t.color}


def serialize_note(n: models.Note) -> dict:
    return {
        "id": n.id,
        "title": n.title,
        "content": n.content,
        "folder_id": n.folder_id,
        "trade_id": n.trade_id,
        "created_at": n.created_at.isoformat() if n.created_at else None,
        "updated_at": n.updated_at.isoformat() if n.updated_at else None,
        "tags": [serialize_tag(t) for t in sorted(n.tags, key=lambda t: t.name)],
    }


def create_default_folders(db: Session, user_id: int):
    existing = db.query(models.Folder).filter(
        models.Folder.user_id == user_id,
        models.Folder.is_default == True  # noqa: E712
    ).first()
    if existing:
        return
    db.add_all([models.Folder(user_id=user_id, is_default=True, **f) for f in DEFAULT_FOLDERS])
    db.commit()
    logger.info(f"[Notes] Created default folders for user {user_id}")


def _get_owned(db: Session, model, obj_id: int, user_id: int, label: str):
    obj = db.query(model).filter(model.id == obj_id, model.user_id == user_id).first()
    if not obj:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return obj


def _check_trade_link(db: Session, trade_id: Optional[int], user_id: int):
    if trade_id is not None:
        _get_owned(db, models.Trade, trade_id, user_id, "Trade")


def _check_unique(db: Session, model, name: str, user_id: int, exclude_id: Optional[int] = None):
    query = db.query(model).filter(model.user_id == user_id, model.name == name)
    if exclude_id is not None:
        query = query.filter(model.id != exclude_id)
    if query.first():
        raise HTTPException(status_code=400, detail=f"{model.__name__} '{name}' already exists")


# --- Folders ---

@router.get("/folders")
def list_folders(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    create_default_folders(db, current_user.id)
    folders = db.query(models.Folder).filter(
        models.Folder.user_id == current_user.id
    ).order_by(models.Folder.id.asc()).all()
    return [serialize_folder(f) for f in folders]


@router.post("/folders")
def create_folder(folder_in: FolderCreate, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    name = folder_in.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Folder name is required")
    _check_unique(db, models.Folder, name, current_user.id)

    folder = models.Folder(user_id=current_user.id, name=name, icon=folder_in.icon, color=folder_in.color)
    db.add(folder)
    db.commit()
    db.refresh(folder)
    return serialize_folder(folder)


@router.put("/folders/{folder_id}")
def update_folder(folder_id: int, folder_in: FolderUpdate, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    folder = _get_owned(db, models.Folder, folder_id, current_user.id, "Folder")
    changes = folder_in.model_dump(exclude_unset=True)
    if changes.get('name'):
        changes['name'] = changes['name'].strip()
        _check_unique(db, models.Folder, changes['name'], current_user.id, exclude_id=folder.id)

    for field, value in changes.items():
        setattr(folder, field, value)
    db.commit()
    db.refresh(folder)
    return serialize_folder(folder)


@router.delete("/folders/{folder_id}")
def delete_folder(folder_id: int, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    """Deletes the folder and its notes. Default folders stay."""
    folder = _get_owned(db, models.Folder, folder_id, current_user.id, "Folder")
    if folder.is_default:
        raise HTTPException(status_code=400, detail="Default folders cannot be deleted")
    db.delete(folder)
    db.commit()
    return {"status": "deleted", "folder_id": folder_id}


# --- Notes ---

@router.get("")
def list_notes(folder_id: Optional[int] = None, trade_id: Optional[int] = None,
               current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    """All notes, newest first, optionally scoped to a folder or trade"""
    query = db.query(models.Note).filter(models.Note.user_id == current_user.id)
    if folder_id is not None:
        query = query.filter(models.Note.folder_id == folder_id)
    if trade_id is not None:
        query = query.filter(models.Note.trade_id == trade_id)
    notes = query.order_by(models.Note.created_at.desc(), models.Note.id.desc()).all()
    return [serialize_note(n) for n in notes]


@router.get("/search")
def search_notes(q: str, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    pattern = f"%{q.strip()}%"
    notes = db.query(models.Note).filter(
        models.Note.user_id == current_user.id,
        or_(models.Note.title.ilike(pattern), models.Note.content.ilike(pattern))
    ).order_by(models.Note.created_at.desc(), models.Note.id.desc()).all()
    return [serialize_note(n) for n in notes]


@router.post("")
def create_note(note_in: NoteCreate, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    if not note_in.title.strip():
        raise HTTPException(status_code=400, detail="Note title is required")
    _get_owned(db, models.Folder, note_in.folder_id, current_user.id, "Folder")
    _check_trade_link(db, note_in.trade_id, current_user.id)

    note = models.Note(
        user_id=current_user.id,
        folder_id=note_in.folder_id,
        trade_id=note_in.trade_id,
        title=note_in.title.strip(),
        content=note_in.content,
    )
    db.add(note)
    db.commit()
    db.refresh(note)
    return serialize_note(note)


@router.get("/{note_id}")
def get_note(note_id: int, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    return serialize_note(_get_owned(db, models.Note, note_id, current_user.id, "Note"))


@router.put("/{note_id}")
def update_note(note_id: int, note_in: NoteUpdate, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    note = _get_owned(db, models.Note, note_id, current_user.id, "Note")
    changes = note_in.model_dump(exclude_unset=True)

    if changes.get('folder_id') is not None:
        _get_owned(db, models.Folder, changes['folder_id'], current_user.id, "Folder")
    if 'trade_id' in changes:
        _check_trade_link(db, changes['trade_id'], current_user.id)

    for field, value in changes.items():
        if field in ('title', 'folder_id') and value is None:
            continue
        setattr(note, field, value)
    db.commit()
    db.refresh(note)
    return serialize_note(note)


@router.delete("/{note_id}")
def delete_note(note_id: int, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    note = _get_owned(db, models.Note, note_id, current_user.id, "Note")
    db.delete(note)
    db.commit()
    return {"status": "deleted", "note_id": note_id}


@router.post("/{note_id}/tags/{tag_id}")
def add_tag_to_note(note_id: int, tag_id: int, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    note = _get_owned(db, models.Note, note_id, current_user.id, "Note")
    tag = _get_owned(db, models.Tag, tag_id, current_user.id, "Tag")
    if tag not in note.tags:
        note.tags.append(tag)
        db.commit()
        db.refresh(note)
    return serialize_note(note)


@router.delete("/{note_id}/tags/{tag_id}")
def remove_tag_from_note(note_id: int, tag_id: int, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    note = _get_owned(db, models.Note, note_id, current_user.id, "Note")
    tag = _get_owned(db, models.Tag, tag_id, current_user.id, "Tag")
    if tag in note.tags:
        note.tags.remove(tag)
        db.commit()
        db.refresh(note)
    return serialize_note(note)


# --- Tags ---

tags_router = APIRouter(prefix="/api/tags", tags=["notes"])


@tags_router.get("")
def list_tags(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    tags = db.query(models.Tag).filter(models.Tag.user_id == current_user.id).order_by(models.Tag.name).all()
    return [serialize_tag(t) for t in tags]


@tags_router.post("")
def create_tag(tag_in: TagCreate, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    name = tag_in.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Tag name is required")
    _check_unique(db, models.Tag, name, current_user.id)

    tag = models.Tag(user_id=current_user.id, name=name, color=tag_in.color)
    db.add(tag)
    db.commit()
    db.refresh(tag)
    return serialize_tag(tag)


@tags_router.put("/{tag_id}")
def update_tag(tag_id: int, tag_in: TagUpdate, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    tag = _get_owned(db, models.Tag, tag_id, current_user.id, "Tag")
    if tag_in.name:
        name = tag_in.name.strip()
        _check_unique(db, models.Tag, name, current_user.id, exclude_id=tag.id)
        tag.name = name
    if tag_in.color:
        tag.color = tag_in.color
    db.commit()
    db.refresh(tag)
    return serialize_tag(tag)


@tags_router.delete("/{tag_id}")
def delete_tag(tag_id: int, current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    tag = _get_owned(db, models.Tag, tag_id, current_user.id, "Tag")
    db.delete(tag)
    db.commit()
    return {"status": "deleted", "tag_id": tag_id}
