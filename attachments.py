"""
Attachment storage for staff, students and users.

Every stored file lives under ``<root>/uploads/<owner-plural>/<code>/<id>/<category>/...``
and is referenced from its owner record by a forward-slash path relative to
``root``. Uploads land in ``uploads/temp`` first and are moved into place by
``AttachmentStore.commit``. All filesystem access goes through
``AttachmentStore.resolve``, which refuses anything outside ``root``.
"""

import errno
import json
import os
import re
import secrets
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import structlog
from fastapi import UploadFile

from schemas import AttachmentRef

logger = structlog.get_logger()

PathLike = Union[str, os.PathLike]


# -------------------- Errors -------------------- #

class AttachmentError(Exception):
    """Base class for attachment failures reported to the caller."""


class InvalidDestination(AttachmentError):
    pass


class DestinationIsDirectory(AttachmentError):
    pass


class PermissionDenied(AttachmentError):
    pass


class UploadRejected(AttachmentError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


# -------------------- Owners & categories -------------------- #

class OwnerType(str, Enum):
    STAFF = "staff"
    STUDENT = "student"
    USER = "user"

    @property
    def plural(self) -> str:
        return {"staff": "staff", "student": "students", "user": "users"}[self.value]


class AttachmentCategory(str, Enum):
    DOCUMENTS = "documents"
    PHOTO = "photo"
    AVATAR = "avatar"


class UploadKind(str, Enum):
    DOCUMENT = "document"
    PHOTO = "photo"


@dataclass(frozen=True)
class OwnerKey:
    owner_type: OwnerType
    owner_id: str
    owner_code: str


# -------------------- Upload validation -------------------- #

IMAGE_MIME_TYPES = frozenset({
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/svg+xml",
})

DOCUMENT_MIME_TYPES = frozenset({
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/plain",
}) | IMAGE_MIME_TYPES

# Multipart field name -> kind. "photo" is the legacy single-photo field.
UPLOAD_FIELDS: Dict[str, UploadKind] = {
    "documents": UploadKind.DOCUMENT,
    "document": UploadKind.DOCUMENT,
    "photo": UploadKind.PHOTO,
    "student_photo": UploadKind.PHOTO,
    "father_photo": UploadKind.PHOTO,
    "mother_photo": UploadKind.PHOTO,
    "avatar": UploadKind.PHOTO,
}

SINGLE_FILE_FIELDS = frozenset(name for name, kind in UPLOAD_FIELDS.items() if kind is UploadKind.PHOTO)


@dataclass(frozen=True)
class UploadLimits:
    max_file_size: int = 5 * 1024 * 1024
    max_avatar_size: int = 2 * 1024 * 1024
    max_documents: int = 10
    max_files: int = 20

    def max_size_for(self, field_name: str) -> int:
        if field_name == "avatar":
            return self.max_avatar_size
        return self.max_file_size


DEFAULT_LIMITS = UploadLimits()


def validate_and_classify(
    field_name: str,
    mime_type: Optional[str],
    size: Optional[int] = None,
    limits: UploadLimits = DEFAULT_LIMITS,
) -> UploadKind:
    """Classify an incoming file by its form field, or raise UploadRejected.

    Images are accepted under the document fields and classified as documents.
    ``size`` may be unknown before the body is read; it is checked again
    against the staged byte count.
    """
    kind = UPLOAD_FIELDS.get(field_name)
    if kind is None:
        raise UploadRejected(f"Unexpected file field: {field_name}")

    mime = (mime_type or "").split(";")[0].strip().lower()
    if kind is UploadKind.PHOTO and mime not in IMAGE_MIME_TYPES:
        raise UploadRejected(f"Invalid file type for {field_name}. Only images are allowed.")
    if kind is UploadKind.DOCUMENT and mime not in DOCUMENT_MIME_TYPES:
        raise UploadRejected(
            f"Invalid file type for {field_name}. Allowed: pdf, doc, docx, txt, images."
        )

    max_size = limits.max_size_for(field_name)
    if size is not None and size > max_size:
        raise UploadRejected(f"File too large for {field_name} (max {max_size} bytes)")
    return kind


def validate_batch(field_names: Iterable[str], limits: UploadLimits = DEFAULT_LIMITS) -> None:
    """Enforce per-request file counts before anything is written to disk."""
    names = list(field_names)
    if len(names) > limits.max_files:
        raise UploadRejected(f"Too many files (max {limits.max_files} per request)")
    documents = sum(1 for n in names if UPLOAD_FIELDS.get(n) is UploadKind.DOCUMENT)
    if documents > limits.max_documents:
        raise UploadRejected(f"Too many documents (max {limits.max_documents} per request)")
    for name in SINGLE_FILE_FIELDS:
        if names.count(name) > 1:
            raise UploadRejected(f"Only one file allowed for {name}")


# -------------------- Naming -------------------- #

_EXTENSION_RE = re.compile(r"^\.[a-z0-9]{1,10}$")


def safe_extension(original_name: Optional[str]) -> str:
    ext = os.path.splitext(original_name or "")[1].lower()
    return ext if _EXTENSION_RE.match(ext) else ""


def generate_filename(original_name: Optional[str], prefix: Optional[str] = None) -> str:
    """``<ms-timestamp>-<random><ext>``, optionally qualified as ``<prefix>-...``."""
    stamp = f"{int(time.time() * 1000)}-{secrets.randbelow(10 ** 9)}"
    name = f"{prefix}-{stamp}" if prefix else stamp
    return name + safe_extension(original_name)


def normalize_rel_path(path: PathLike) -> str:
    if not path:
        return ""
    return re.sub(r"/+", "/", str(path).replace("\\", "/"))


def _segment(value: Any, label: str) -> str:
    text = str(value or "").strip()
    if not text or text in (".", "..") or "/" in text or "\\" in text or "\x00" in text:
        raise ValueError(f"Invalid {label} path segment: {value!r}")
    return text


def layout_for(
    owner_type: Union[OwnerType, str],
    owner_code: str,
    owner_id: str,
    category: Union[AttachmentCategory, str],
    filename: str,
    subcategory: Optional[str] = None,
    upload_dir: str = "uploads",
) -> str:
    """Relative storage path for an owner's file.

    >>> layout_for("student", "STUD0007", "507f", "documents", "1-2.pdf")
    'uploads/students/STUD0007/507f/documents/1-2.pdf'
    """
    owner_type = OwnerType(owner_type)
    category = AttachmentCategory(category)
    parts = [
        upload_dir,
        owner_type.plural,
        _segment(owner_code, "owner code"),
        _segment(owner_id, "owner id"),
        category.value,
    ]
    if subcategory:
        parts.append(_segment(subcategory, "subcategory"))
    parts.append(_segment(filename, "filename"))
    return "/".join(parts)


def owner_directory(owner: OwnerKey, upload_dir: str = "uploads") -> str:
    return "/".join([
        upload_dir,
        owner.owner_type.plural,
        _segment(owner.owner_code, "owner code"),
        _segment(owner.owner_id, "owner id"),
    ])


def parse_path_list(raw: Any) -> List[str]:
    """Accept a list, a JSON list string, a comma-separated string or a single path."""
    if raw is None or raw == "":
        return []
    if isinstance(raw, (list, tuple)):
        items = []
        for item in raw:
            items.extend(parse_path_list(item))
        return items
    text = str(raw).strip()
    if not text:
        return []
    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None
    if isinstance(parsed, list):
        return [normalize_rel_path(str(p).strip()) for p in parsed if str(p).strip()]
    if "," in text:
        return [normalize_rel_path(p.strip()) for p in text.split(",") if p.strip()]
    return [normalize_rel_path(text)]


def ref_path(ref: Any) -> str:
    """Stored path of a ref given as a dict, AttachmentRef or bare string."""
    if not ref:
        return ""
    if isinstance(ref, str):
        return normalize_rel_path(ref)
    if isinstance(ref, AttachmentRef):
        return normalize_rel_path(ref.stored_path)
    return normalize_rel_path(ref.get("stored_path") or "")


@dataclass
class StagedFile:
    field_name: str
    original_name: str
    content_type: str
    path: Path
    size: int
    kind: UploadKind


@dataclass
class RemovalPlan:
    documents: List[Dict[str, Any]]
    cleared_slots: List[str] = field(default_factory=list)
    paths: List[str] = field(default_factory=list)


def plan_removals(
    documents: Iterable[Any],
    slots: Dict[str, Any],
    requested: Iterable[str],
) -> RemovalPlan:
    """Work out which refs a removal-by-path request drops from a record.

    Only paths that match one of the record's own refs are scheduled for
    deletion; anything else in the request is ignored.
    """
    wanted = {normalize_rel_path(p) for p in requested if p}
    kept, paths = [], []
    for doc in documents or []:
        path = ref_path(doc)
        if path and path in wanted:
            paths.append(path)
        else:
            kept.append(doc)
    cleared = []
    for slot, ref in slots.items():
        path = ref_path(ref)
        if path and path in wanted:
            cleared.append(slot)
            paths.append(path)
    return RemovalPlan(documents=kept, cleared_slots=cleared, paths=paths)


# -------------------- Store -------------------- #

class AttachmentStore:
    def __init__(
        self,
        root: PathLike,
        upload_dir_name: str = "uploads",
        staging_dir_name: str = "temp",
        limits: UploadLimits = DEFAULT_LIMITS,
    ):
        self.root = Path(os.path.abspath(root))
        self.upload_dir_name = upload_dir_name
        self.upload_dir = self.root / upload_dir_name
        self.staging_dir = self.upload_dir / staging_dir_name
        self.limits = limits

    # ---- path guard ----

    def resolve(self, path: Optional[PathLike]) -> Optional[Path]:
        """Absolute location for a stored or absolute path, or None if it escapes the root."""
        if path is None:
            return None
        raw = str(path).replace("\\", "/").strip()
        if not raw or "\x00" in raw:
            return None
        candidate = raw if os.path.isabs(raw) else os.path.join(str(self.root), raw)
        resolved = os.path.normpath(candidate)
        root = str(self.root)
        if resolved == root or resolved.startswith(root.rstrip(os.sep) + os.sep):
            return Path(resolved)
        logger.warning("path_traversal_rejected", path=raw, root=root)
        return None

    def _within(self, path: Path, directory: Path) -> bool:
        return path == directory or str(path).startswith(str(directory) + os.sep)

    def to_relative(self, path: PathLike) -> str:
        resolved = self.resolve(path)
        if resolved is None:
            raise InvalidDestination(f"Path outside storage root: {path}")
        return resolved.relative_to(self.root).as_posix()

    # ---- naming ----

    def layout_for(self, owner_type, owner_code, owner_id, category, filename, subcategory=None) -> str:
        return layout_for(
            owner_type, owner_code, owner_id, category, filename,
            subcategory=subcategory, upload_dir=self.upload_dir_name,
        )

    def owner_dir(self, owner: OwnerKey) -> str:
        return owner_directory(owner, upload_dir=self.upload_dir_name)

    # ---- move-in ----

    def commit(self, staging_path: PathLike, dest_rel: PathLike) -> str:
        """Move a staged file to ``dest_rel`` and return the normalized relative path."""
        dest = self.resolve(dest_rel)
        if dest is None:
            raise InvalidDestination(f"Invalid destination path: {dest_rel}")
        if self._within(dest, self.staging_dir):
            raise InvalidDestination(f"Destination inside staging area: {dest_rel}")

        try:
            if dest.is_dir():
                raise DestinationIsDirectory(
                    f"Destination path is a directory (expected file path): {dest}"
                )
            dest.parent.mkdir(parents=True, exist_ok=True)
            self._move(Path(staging_path), dest)
        except PermissionError as exc:
            logger.error("attachment_permission_denied", destination=str(dest), error=str(exc))
            raise PermissionDenied(f"Permission error storing file at {dest}") from exc

        stored = dest.relative_to(self.root).as_posix()
        logger.info("attachment_committed", stored_path=stored)
        return stored

    @staticmethod
    def _move(src: Path, dest: Path) -> None:
        try:
            os.replace(src, dest)
        except OSError as exc:
            if exc.errno != errno.EXDEV:
                raise
            shutil.copy2(src, dest)
            os.unlink(src)

    # ---- cleanup (never raises) ----

    def remove_file(self, path: Optional[PathLike]) -> None:
        target = self.resolve(path)
        if target is None:
            return
        try:
            if target.is_file() or target.is_symlink():
                target.unlink()
                logger.debug("attachment_removed", path=str(path))
        except FileNotFoundError:
            pass
        except (OSError, ValueError) as exc:
            logger.warning("cleanup_failure", path=str(path), error=str(exc))

    def remove_tree(self, path: Optional[PathLike]) -> None:
        target = self.resolve(path)
        if target is None:
            return
        if target in (self.root, self.upload_dir, self.staging_dir):
            logger.warning("cleanup_refused", path=str(path))
            return
        try:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            elif target.is_symlink() or target.exists():
                target.unlink()
            logger.debug("attachment_tree_removed", path=str(path))
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("cleanup_failure", path=str(path), error=str(exc))

    # ---- staging sink ----

    def stage(self, upload: UploadFile, field_name: str) -> StagedFile:
        """Write an uploaded file into the staging area after validating it."""
        kind = validate_and_classify(
            field_name, upload.content_type, getattr(upload, "size", None), self.limits
        )
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        dest = self.staging_dir / generate_filename(upload.filename)
        try:
            with dest.open("wb") as out:
                shutil.copyfileobj(upload.file, out)
        except OSError:
            self.remove_file(dest)
            raise
        finally:
            upload.file.close()

        staged = StagedFile(
            field_name=field_name,
            original_name=upload.filename or dest.name,
            content_type=upload.content_type or "",
            path=dest,
            size=dest.stat().st_size,
            kind=kind,
        )
        max_size = self.limits.max_size_for(field_name)
        if staged.size > max_size:
            self.discard([staged])
            raise UploadRejected(f"File too large for {field_name} (max {max_size} bytes)")
        return staged

    def discard(self, staged_files: Iterable[StagedFile]) -> None:
        for staged in staged_files:
            self.remove_file(staged.path)

    # ---- owner-level helpers ----

    def attach(
        self,
        staged: StagedFile,
        owner: OwnerKey,
        category: AttachmentCategory,
        subcategory: Optional[str] = None,
        prefix: Optional[str] = None,
    ) -> AttachmentRef:
        filename = generate_filename(staged.original_name, prefix=prefix)
        dest = self.layout_for(
            owner.owner_type, owner.owner_code, owner.owner_id, category, filename, subcategory
        )
        stored = self.commit(staged.path, dest)
        return AttachmentRef(
            original_name=staged.original_name,
            stored_path=stored,
            uploaded_at=datetime.now(timezone.utc),
        )

    def remove_refs(self, refs: Iterable[Any]) -> None:
        for ref in refs:
            path = ref_path(ref)
            if path:
                self.remove_file(path)

    def purge_owner(self, owner: OwnerKey, refs: Iterable[Any] = ()) -> None:
        """Delete every known ref, then sweep the owner's whole directory."""
        self.remove_refs(refs)
        self.remove_tree(self.owner_dir(owner))
        logger.info(
            "owner_attachments_purged",
            owner_type=owner.owner_type.value,
            owner_id=owner.owner_id,
        )
