"""
Image and headshot record store.

Every read and write is filtered by the owning user id. Headshot status
transitions are conditional updates so that a row in a terminal state
(completed or failed) is never modified by the generation workflow again.
"""

import json
import uuid
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Iterable

from db_store import get_db, _format_query, utcnow

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

ACTIVE_STATUSES = (STATUS_PENDING, STATUS_PROCESSING)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)

IMAGE_TYPE_UPLOADED = "uploaded"
IMAGE_TYPE_GENERATED = "generated"
IMAGE_TYPES = (IMAGE_TYPE_UPLOADED, IMAGE_TYPE_GENERATED)

UPDATABLE_HEADSHOT_FIELDS = ("status", "prompt", "generated_image_id", "step", "error", "paid")


class NotFoundError(LookupError):
    """No row matches the given id for the given owner."""


class ImageInUseError(Exception):
    """The image is the result of a completed headshot and cannot be deleted."""


@dataclass
class Image:
    """A stored image, either uploaded by the user or generated for them."""
    id: str
    user_id: str
    type: str
    url: str
    created_at: str
    storage_path: Optional[str] = None
    content_type: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Image":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            type=row["type"],
            url=row["url"],
            created_at=row["created_at"],
            storage_path=row.get("storage_path"),
            content_type=row.get("content_type"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "url": self.url,
            "content_type": self.content_type,
            "created_at": self.created_at,
        }


@dataclass
class Headshot:
    """One generation attempt, tracked from pending to completed/failed."""
    id: str
    user_id: str
    status: str
    created_at: str
    updated_at: str
    prompt: Optional[str] = None
    generated_image_id: Optional[str] = None
    preferences: Dict[str, Any] = field(default_factory=dict)
    request_key: Optional[str] = None
    step: Optional[str] = None
    error: Optional[str] = None
    paid: bool = False
    generated_image: Optional[Image] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Headshot":
        preferences = row.get("preferences")
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            prompt=row.get("prompt"),
            generated_image_id=row.get("generated_image_id"),
            preferences=json.loads(preferences) if preferences else {},
            request_key=row.get("request_key"),
            step=row.get("step"),
            error=row.get("error"),
            paid=bool(row.get("paid")),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status,
            "prompt": self.prompt,
            "generated_image_id": self.generated_image_id,
            "generated_image": self.generated_image.to_dict() if self.generated_image else None,
            "preferences": self.preferences,
            "step": self.step,
            "error": self.error,
            "paid": self.paid,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def _placeholders(count: int) -> str:
    return ", ".join(["?"] * count)


# ============= IMAGES =============

def create_image(
    user_id: str,
    image_type: str,
    url: str,
    storage_path: Optional[str] = None,
    content_type: Optional[str] = None,
) -> Image:
    """
    Insert an image row. The blob behind ``url`` must already be stored.
    """
    if image_type not in IMAGE_TYPES:
        raise ValueError(f"Unknown image type: {image_type}")

    image = Image(
        id=uuid.uuid4().hex,
        user_id=user_id,
        type=image_type,
        url=url,
        created_at=utcnow(),
        storage_path=storage_path,
        content_type=content_type,
    )
    with get_db() as conn:
        cursor = conn.cursor()
        query = _format_query("""
            INSERT INTO images (id, user_id, type, url, storage_path, content_type, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """)
        cursor.execute(query, (
            image.id, image.user_id, image.type, image.url,
            image.storage_path, image.content_type, image.created_at,
        ))
    logger.debug(f"Image {image.id} ({image_type}) recorded for user {user_id}")
    return image


def get_image(image_id: str, user_id: str) -> Image:
    """Get one image owned by the user."""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(
            _format_query("SELECT * FROM images WHERE id = ? AND user_id = ?"),
            (image_id, user_id),
        )
        row = cursor.fetchone()
    if not row:
        raise NotFoundError(f"Image {image_id} not found")
    return Image.from_row(dict(row))


def get_images(user_id: str, image_ids: Iterable[str]) -> List[Image]:
    """Get the subset of ``image_ids`` that exist and belong to the user."""
    ids = list(dict.fromkeys(image_ids))
    if not ids:
        return []
    with get_db() as conn:
        cursor = conn.cursor()
        query = _format_query(
            f"SELECT * FROM images WHERE user_id = ? AND id IN ({_placeholders(len(ids))})"
        )
        cursor.execute(query, (user_id, *ids))
        return [Image.from_row(dict(row)) for row in cursor.fetchall()]


def list_images(user_id: str, image_type: Optional[str] = None) -> List[Image]:
    """List the user's images, newest first."""
    with get_db() as conn:
        cursor = conn.cursor()
        if image_type:
            query = _format_query("""
                SELECT * FROM images WHERE user_id = ? AND type = ?
                ORDER BY created_at DESC
            """)
            cursor.execute(query, (user_id, image_type))
        else:
            query = _format_query("SELECT * FROM images WHERE user_id = ? ORDER BY created_at DESC")
            cursor.execute(query, (user_id,))
        return [Image.from_row(dict(row)) for row in cursor.fetchall()]


def delete_image(image_id: str, user_id: str) -> Image:
    """
    Delete an image row owned by the user.
    Returns the deleted image so the caller can remove its blob.
    Raises: NotFoundError if not owned, ImageInUseError if a headshot links to it
    """
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(
            _format_query("SELECT * FROM images WHERE id = ? AND user_id = ?"),
            (image_id, user_id),
        )
        row = cursor.fetchone()
        if not row:
            raise NotFoundError(f"Image {image_id} not found")

        cursor.execute(
            _format_query("SELECT id FROM headshots WHERE generated_image_id = ?"),
            (image_id,),
        )
        if cursor.fetchone():
            raise ImageInUseError(f"Image {image_id} is the result of a headshot")

        cursor.execute(
            _format_query("DELETE FROM images WHERE id = ? AND user_id = ?"),
            (image_id, user_id),
        )
    return Image.from_row(dict(row))


# ============= HEADSHOTS =============

def create_headshot(
    user_id: str,
    image_ids: Iterable[str] = (),
    preferences: Optional[Dict[str, Any]] = None,
    request_key: Optional[str] = None,
) -> Headshot:
    """Create a pending headshot and link the source images to it."""
    now = utcnow()
    headshot = Headshot(
        id=uuid.uuid4().hex,
        user_id=user_id,
        status=STATUS_PENDING,
        created_at=now,
        updated_at=now,
        preferences=dict(preferences or {}),
        request_key=request_key,
    )
    with get_db() as conn:
        cursor = conn.cursor()
        query = _format_query("""
            INSERT INTO headshots
            (id, user_id, status, preferences, request_key, paid, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 0, ?, ?)
        """)
        cursor.execute(query, (
            headshot.id, user_id, STATUS_PENDING,
            json.dumps(headshot.preferences, sort_keys=True), request_key, now, now,
        ))
        link_query = _format_query("INSERT INTO headshot_images (headshot_id, image_id) VALUES (?, ?)")
        for image_id in dict.fromkeys(image_ids):
            cursor.execute(link_query, (headshot.id, image_id))
    logger.info(f"Headshot {headshot.id} created for user {user_id}")
    return headshot


def get_headshot(headshot_id: str, user_id: str) -> Headshot:
    """Get one headshot owned by the user."""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(
            _format_query("SELECT * FROM headshots WHERE id = ? AND user_id = ?"),
            (headshot_id, user_id),
        )
        row = cursor.fetchone()
    if not row:
        raise NotFoundError(f"Headshot {headshot_id} not found")
    return Headshot.from_row(dict(row))


_JOINED_HEADSHOT_SELECT = """
    SELECT h.*,
           i.id AS gi_id, i.url AS gi_url, i.type AS gi_type,
           i.storage_path AS gi_storage_path, i.content_type AS gi_content_type,
           i.created_at AS gi_created_at
    FROM headshots h
    LEFT JOIN images i ON i.id = h.generated_image_id
"""


def _headshot_from_joined_row(row: Dict[str, Any]) -> Headshot:
    headshot = Headshot.from_row(row)
    if row.get("gi_id"):
        headshot.generated_image = Image(
            id=row["gi_id"],
            user_id=row["user_id"],
            type=row["gi_type"],
            url=row["gi_url"],
            created_at=row["gi_created_at"],
            storage_path=row.get("gi_storage_path"),
            content_type=row.get("gi_content_type"),
        )
    return headshot


def get_headshot_with_generated_image(headshot_id: str, user_id: str) -> Headshot:
    """Get a headshot together with its generated image, if it has one."""
    with get_db() as conn:
        cursor = conn.cursor()
        query = _format_query(_JOINED_HEADSHOT_SELECT + " WHERE h.id = ? AND h.user_id = ?")
        cursor.execute(query, (headshot_id, user_id))
        row = cursor.fetchone()
    if not row:
        raise NotFoundError(f"Headshot {headshot_id} not found")
    return _headshot_from_joined_row(dict(row))


def list_headshots(user_id: str) -> List[Headshot]:
    """List the user's headshots with generated images, newest first."""
    with get_db() as conn:
        cursor = conn.cursor()
        query = _format_query(_JOINED_HEADSHOT_SELECT + " WHERE h.user_id = ? ORDER BY h.created_at DESC")
        cursor.execute(query, (user_id,))
        return [_headshot_from_joined_row(dict(row)) for row in cursor.fetchall()]


def get_headshot_source_images(headshot_id: str, user_id: str) -> List[Image]:
    """Get the uploaded images a headshot was requested with."""
    with get_db() as conn:
        cursor = conn.cursor()
        query = _format_query("""
            SELECT i.* FROM images i
            JOIN headshot_images hi ON hi.image_id = i.id
            JOIN headshots h ON h.id = hi.headshot_id
            WHERE h.id = ? AND h.user_id = ? AND i.user_id = ?
            ORDER BY i.created_at
        """)
        cursor.execute(query, (headshot_id, user_id, user_id))
        return [Image.from_row(dict(row)) for row in cursor.fetchall()]


def update_headshot(
    headshot_id: str,
    user_id: str,
    fields: Dict[str, Any],
    expected_statuses: Optional[Iterable[str]] = None,
) -> Optional[Headshot]:
    """
    Apply a partial update to a headshot owned by the user.

    When ``expected_statuses`` is given, the update only applies if the row is
    currently in one of them. Returns the updated headshot, or None if the
    status guard rejected the update.

    Raises: NotFoundError if no row matches id and owner
    """
    unknown = set(fields) - set(UPDATABLE_HEADSHOT_FIELDS)
    if unknown:
        raise ValueError(f"Cannot update headshot fields: {sorted(unknown)}")

    values = {key: (int(value) if key == "paid" else value) for key, value in fields.items()}
    values["updated_at"] = utcnow()
    assignments = ", ".join(f"{key} = ?" for key in values)
    params: list = [*values.values(), headshot_id, user_id]

    query = f"UPDATE headshots SET {assignments} WHERE id = ? AND user_id = ?"
    if expected_statuses is not None:
        statuses = list(expected_statuses)
        query += f" AND status IN ({_placeholders(len(statuses))})"
        params.extend(statuses)

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(_format_query(query), tuple(params))
        changed = cursor.rowcount > 0
        if not changed:
            cursor.execute(
                _format_query("SELECT 1 FROM headshots WHERE id = ? AND user_id = ?"),
                (headshot_id, user_id),
            )
            if cursor.fetchone() is None:
                raise NotFoundError(f"Headshot {headshot_id} not found")

    if not changed:
        logger.debug(f"Headshot {headshot_id} update {sorted(fields)} rejected by status guard")
        return None
    return get_headshot(headshot_id, user_id)


# Guarded transitions used by the generation workflow. Each returns True only
# if the row was actually changed.

def start_processing(headshot_id: str, user_id: str) -> bool:
    """pending -> processing"""
    updated = update_headshot(
        headshot_id, user_id,
        {"status": STATUS_PROCESSING},
        expected_statuses=(STATUS_PENDING,),
    )
    return updated is not None


def set_step(headshot_id: str, user_id: str, step: str) -> bool:
    """Record the pipeline step a processing headshot has entered."""
    updated = update_headshot(
        headshot_id, user_id, {"step": step},
        expected_statuses=(STATUS_PROCESSING,),
    )
    return updated is not None


def set_prompt(headshot_id: str, user_id: str, prompt: str) -> bool:
    """Persist the synthesized prompt of a processing headshot."""
    updated = update_headshot(
        headshot_id, user_id, {"prompt": prompt},
        expected_statuses=(STATUS_PROCESSING,),
    )
    return updated is not None


def complete_headshot(headshot_id: str, user_id: str, generated_image_id: str) -> bool:
    """processing -> completed, linking the generated image in the same write."""
    updated = update_headshot(
        headshot_id, user_id,
        {"status": STATUS_COMPLETED, "generated_image_id": generated_image_id, "error": None},
        expected_statuses=(STATUS_PROCESSING,),
    )
    return updated is not None


def fail_headshot(headshot_id: str, user_id: str, error: str, step: Optional[str] = None) -> bool:
    """pending/processing -> failed, recording the cause."""
    fields: Dict[str, Any] = {"status": STATUS_FAILED, "error": error}
    if step:
        fields["step"] = step
    updated = update_headshot(headshot_id, user_id, fields, expected_statuses=ACTIVE_STATUSES)
    return updated is not None


def mark_headshot_paid(headshot_id: str, user_id: str) -> bool:
    """Flag a headshot as paid. Allowed in any status."""
    return update_headshot(headshot_id, user_id, {"paid": True}) is not None


def find_active_headshot(user_id: str, request_key: str) -> Optional[Headshot]:
    """Newest pending/processing headshot of the user with the given request key."""
    with get_db() as conn:
        cursor = conn.cursor()
        query = _format_query(f"""
            SELECT * FROM headshots
            WHERE user_id = ? AND request_key = ? AND status IN ({_placeholders(len(ACTIVE_STATUSES))})
            ORDER BY created_at DESC
        """)
        cursor.execute(query, (user_id, request_key, *ACTIVE_STATUSES))
        row = cursor.fetchone()
    return Headshot.from_row(dict(row)) if row else None


def find_stale_headshots(updated_before: str) -> List[Headshot]:
    """Pending/processing headshots (any owner) not updated since ``updated_before``."""
    with get_db() as conn:
        cursor = conn.cursor()
        query = _format_query(f"""
            SELECT * FROM headshots
            WHERE status IN ({_placeholders(len(ACTIVE_STATUSES))}) AND updated_at < ?
            ORDER BY updated_at
        """)
        cursor.execute(query, (*ACTIVE_STATUSES, updated_before))
        return [Headshot.from_row(dict(row)) for row in cursor.fetchall()]
