import os
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, ValidationError
from pymongo.errors import DuplicateKeyError
from starlette.datastructures import UploadFile

import database
from attachments import (
    AttachmentCategory,
    AttachmentError,
    AttachmentStore,
    OwnerKey,
    OwnerType,
    PermissionDenied,
    StagedFile,
    UploadLimits,
    UploadRejected,
    parse_path_list,
    plan_removals,
    ref_path,
    validate_and_classify,
    validate_batch,
)
from database import create_document, get_documents, next_code, utcnow
from logging_config import configure_logging
from schemas import (
    AttendanceMark,
    AttendanceUpdate,
    Classroom,
    ClassroomUpdate,
    SectionIn,
    Staff,
    StaffBase,
    Student,
    StudentAuth,
    StudentBase,
    User,
    UserUpdate,
)
from settings import settings

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.DEBUG)
    os.makedirs(get_store().staging_dir, exist_ok=True)
    for owner_type in OwnerType:
        os.makedirs(get_store().upload_dir / owner_type.plural, exist_ok=True)
    try:
        database.ensure_indexes()
    except Exception as e:
        logger.warning("Index creation failed", error=str(e))
    logger.info("Application started", storage_root=str(get_store().root))
    yield
    logger.info("Application stopped")


app = FastAPI(title=settings.PROJECT_NAME, version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -------------------- Static files -------------------- #
# Only committed owner folders are public; the staging area is not mounted.
for _owner_type in OwnerType:
    app.mount(
        f"/{settings.UPLOAD_DIR_NAME}/{_owner_type.plural}",
        StaticFiles(directory=str(settings.upload_dir_path / _owner_type.plural), check_dir=False),
        name=f"uploads-{_owner_type.plural}",
    )


def collection_name(model_cls) -> str:
    return model_cls.__name__.lower()


USERS = collection_name(User)
STAFF = collection_name(Staff)
STUDENTS = collection_name(Student)
STUDENT_AUTH = collection_name(StudentAuth)
CLASSES = collection_name(Classroom)
ATTENDANCE = "attendance"

ADMIN_ROLES = ("Admin", "SuperAdmin")


def serialize_value(v: Any) -> Any:
    if isinstance(v, ObjectId):
        return str(v)
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    if isinstance(v, dict):
        return serialize_doc(v)
    if isinstance(v, list):
        return [serialize_value(x) for x in v]
    return v


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    d.pop("password_hash", None)
    return {k: serialize_value(v) for k, v in d.items()}


def serialize_list(docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [serialize_doc(d) for d in docs]


def mongo_dump(model: BaseModel, exclude_unset: bool = False) -> Dict[str, Any]:
    """model_dump with plain dates widened to datetimes (BSON has no date type)."""
    data = model.model_dump(exclude_unset=exclude_unset)
    for k, v in data.items():
        if isinstance(v, date) and not isinstance(v, datetime):
            data[k] = datetime(v.year, v.month, v.day)
    return data


def object_id(value: Any, label: str = "id") -> ObjectId:
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail=f"Invalid {label}")


# -------------------- Dependencies -------------------- #

def get_db():
    if database.db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return database.db


@lru_cache
def get_store() -> AttachmentStore:
    limits = UploadLimits(
        max_file_size=settings.MAX_FILE_SIZE,
        max_avatar_size=settings.MAX_AVATAR_SIZE,
        max_documents=settings.MAX_DOCUMENTS_PER_REQUEST,
        max_files=settings.MAX_FILES_PER_REQUEST,
    )
    return AttachmentStore(
        settings.storage_root_path,
        upload_dir_name=settings.UPLOAD_DIR_NAME,
        staging_dir_name=settings.STAGING_DIR_NAME,
        limits=limits,
    )


# -------------------- Auth & Security -------------------- #
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class LoginPayload(BaseModel):
    email: str
    password: str


class StudentLoginPayload(BaseModel):
    username: str
    password: str


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(plain, hashed)


def create_access_token(data: dict, secret: str, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, secret, algorithm=settings.JWT_ALGORITHM)


def _bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("authorization")
    if auth and auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1].strip()
    return request.cookies.get("token")


def _decode_subject(token: Optional[str], secret: str, token_type: str) -> Optional[ObjectId]:
    if not token:
        return None
    try:
        payload = jwt.decode(token, secret, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
    sub = payload.get("sub")
    if payload.get("typ") != token_type or not sub or not ObjectId.is_valid(sub):
        return None
    return ObjectId(sub)


def get_current_user(request: Request, db=Depends(get_db)) -> Optional[Dict[str, Any]]:
    """Return the logged-in user document (without password hash), else None."""
    user_id = _decode_subject(_bearer_token(request), settings.JWT_SECRET, "user")
    if user_id is None:
        return None
    return db[USERS].find_one({"_id": user_id}, {"password_hash": 0})


def require_roles(*roles: str):
    def _dep(user: Optional[Dict[str, Any]] = Depends(get_current_user)):
        if user is None:
            raise HTTPException(status_code=401, detail="Not authenticated")
        if roles and user.get("role") not in roles:
            raise HTTPException(status_code=403, detail="Forbidden")
        return user
    return _dep


def get_current_student(request: Request, db=Depends(get_db)) -> Dict[str, Any]:
    auth_id = _decode_subject(_bearer_token(request), settings.STUDENT_JWT_SECRET, "student")
    auth = db[STUDENT_AUTH].find_one({"_id": auth_id}) if auth_id else None
    if auth is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    student = db[STUDENTS].find_one({"_id": ObjectId(auth["student_id"])})
    if student is None:
        raise HTTPException(status_code=401, detail="Student not found")
    return student


def actor_code(user: Optional[Dict[str, Any]]) -> Optional[str]:
    if not user:
        return None
    return user.get("user_code") or str(user.get("_id"))


def with_actor_info(db, docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    codes = {d.get(k) for d in docs for k in ("created_by", "updated_by") if d.get(k)}
    lookup = {}
    if codes:
        for u in db[USERS].find({"user_code": {"$in": list(codes)}}, {"user_code": 1, "full_name": 1}):
            lookup[u["user_code"]] = {"user_code": u["user_code"], "full_name": u.get("full_name")}
    out = []
    for d in docs:
        item = serialize_doc(d)
        item["created_by_info"] = lookup.get(d.get("created_by"))
        item["updated_by_info"] = lookup.get(d.get("updated_by"))
        out.append(item)
    return out


# -------------------- Multipart & attachments -------------------- #

# multipart field -> (record slot, category, subcategory, filename prefix)
SlotTarget = Tuple[str, AttachmentCategory, Optional[str], str]

STAFF_SLOTS: Dict[str, SlotTarget] = {
    "photo": ("photo", AttachmentCategory.PHOTO, None, "photo"),
}
STUDENT_SLOTS: Dict[str, SlotTarget] = {
    "student_photo": ("student_photo", AttachmentCategory.PHOTO, "student", "student"),
    "photo": ("student_photo", AttachmentCategory.PHOTO, "student", "student"),
    "father_photo": ("father_photo", AttachmentCategory.PHOTO, "father", "father"),
    "mother_photo": ("mother_photo", AttachmentCategory.PHOTO, "mother", "mother"),
}
USER_SLOTS: Dict[str, SlotTarget] = {
    "avatar": ("avatar", AttachmentCategory.AVATAR, None, "avatar"),
}

REMOVED_FILE_FIELDS = ("removed_files", "removedFiles", "removed_files_json", "removedFilesJson")


async def read_form(request: Request) -> Tuple[Dict[str, Any], List[Tuple[str, UploadFile]]]:
    """Split a multipart body into scalar fields and (field, file) pairs."""
    form = await request.form()
    fields: Dict[str, Any] = {}
    uploads: List[Tuple[str, UploadFile]] = []
    for key, value in form.multi_items():
        name = key[:-2] if key.endswith("[]") else key
        if isinstance(value, UploadFile):
            if value.filename:
                uploads.append((name, value))
            continue
        if value == "":
            continue
        if name in fields:
            prev = fields[name]
            fields[name] = (prev if isinstance(prev, list) else [prev]) + [value]
        else:
            fields[name] = value
    return fields, uploads


def pop_removed_files(fields: Dict[str, Any]) -> List[str]:
    removed: List[str] = []
    for name in REMOVED_FILE_FIELDS:
        removed.extend(parse_path_list(fields.pop(name, None)))
    return removed


def parse_model(model: Type[BaseModel], fields: Dict[str, Any]) -> BaseModel:
    try:
        return model.model_validate(fields)
    except ValidationError as e:
        raise RequestValidationError(e.errors())


def http_error_for(exc: Exception) -> Exception:
    if isinstance(exc, HTTPException):
        return exc
    if isinstance(exc, UploadRejected):
        return HTTPException(status_code=400, detail=exc.reason)
    if isinstance(exc, PermissionDenied):
        logger.error("Attachment permission error", error=str(exc))
        return HTTPException(status_code=500, detail="Permission denied while storing file")
    if isinstance(exc, AttachmentError):
        logger.error("Attachment storage error", error=str(exc))
        return HTTPException(status_code=500, detail="Failed to store file")
    if isinstance(exc, DuplicateKeyError):
        return HTTPException(status_code=400, detail="Duplicate key")
    logger.error("Request failed", error=str(exc), exc_info=exc)
    return HTTPException(status_code=500, detail="Server error")


def stage_uploads(
    store: AttachmentStore,
    uploads: List[Tuple[str, UploadFile]],
    slot_fields: Dict[str, SlotTarget],
    allow_documents: bool = True,
) -> List[StagedFile]:
    """Validate every file, then write them all to the staging area.

    Nothing is written unless the whole batch passes validation.
    """
    try:
        seen_slots = set()
        for field_name, upload in uploads:
            if field_name in slot_fields:
                slot = slot_fields[field_name][0]
                if slot in seen_slots:
                    raise UploadRejected(f"Only one file allowed for {slot}")
                seen_slots.add(slot)
            elif not allow_documents or field_name not in ("documents", "document"):
                raise UploadRejected(f"Unexpected file field: {field_name}")
            validate_and_classify(
                field_name, upload.content_type, getattr(upload, "size", None), store.limits
            )
        validate_batch([name for name, _ in uploads], store.limits)
    except UploadRejected as exc:
        raise http_error_for(exc) from exc

    staged: List[StagedFile] = []
    try:
        for field_name, upload in uploads:
            staged.append(store.stage(upload, field_name))
    except Exception as exc:
        store.discard(staged)
        raise http_error_for(exc) from exc
    return staged


def attach_staged(
    store: AttachmentStore,
    owner: OwnerKey,
    staged: List[StagedFile],
    slot_fields: Dict[str, SlotTarget],
) -> Tuple[List[Dict[str, Any]], Dict[str, Dict[str, Any]]]:
    documents: List[Dict[str, Any]] = []
    slots: Dict[str, Dict[str, Any]] = {}
    committed = []
    try:
        for item in staged:
            if item.field_name in slot_fields:
                slot, category, subcategory, prefix = slot_fields[item.field_name]
                ref = store.attach(item, owner, category, subcategory=subcategory, prefix=prefix)
                slots[slot] = ref.model_dump()
            else:
                ref = store.attach(item, owner, AttachmentCategory.DOCUMENTS)
                documents.append(ref.model_dump())
            committed.append(ref)
    except Exception:
        store.remove_refs(committed)
        raise
    return documents, slots


def insert_with_attachments(
    store: AttachmentStore,
    collection: str,
    record: Dict[str, Any],
    owner: OwnerKey,
    staged: List[StagedFile],
    slot_fields: Dict[str, SlotTarget],
    has_documents: bool = True,
) -> str:
    """Move files in, then write the new record. On failure nothing is left behind."""
    new_refs: List[Dict[str, Any]] = []
    try:
        documents, slots = attach_staged(store, owner, staged, slot_fields)
        new_refs = documents + list(slots.values())
        if has_documents:
            record["documents"] = documents
        record.update(slots)
        return create_document(collection, record)
    except Exception as exc:
        store.purge_owner(owner, new_refs)
        err = http_error_for(exc)
        if err is exc:
            raise
        raise err from exc
    finally:
        store.discard(staged)


def update_with_attachments(
    db,
    store: AttachmentStore,
    collection: str,
    record: Dict[str, Any],
    owner: OwnerKey,
    staged: List[StagedFile],
    slot_fields: Dict[str, SlotTarget],
    changes: Dict[str, Any],
    removed: Iterable[str] = (),
    has_documents: bool = True,
) -> Dict[str, Any]:
    """Move new files in, write the record, then delete whatever it no longer references."""
    slot_names = sorted({target[0] for target in slot_fields.values()})
    new_refs: List[Dict[str, Any]] = []
    replaced: List[Any] = []
    try:
        plan = plan_removals(
            record.get("documents") or [], {s: record.get(s) for s in slot_names}, removed
        )
        documents, slots = attach_staged(store, owner, staged, slot_fields)
        new_refs = documents + list(slots.values())

        update = dict(changes)
        if has_documents:
            update["documents"] = plan.documents + documents
        for slot in plan.cleared_slots:
            update[slot] = None
        for slot, ref in slots.items():
            old = record.get(slot)
            if old and slot not in plan.cleared_slots and ref_path(old) != ref_path(ref):
                replaced.append(old)
            update[slot] = ref
        update["updated_at"] = utcnow()
        db[collection].update_one({"_id": record["_id"]}, {"$set": update})
    except Exception as exc:
        store.remove_refs(new_refs)
        err = http_error_for(exc)
        if err is exc:
            raise
        raise err from exc
    finally:
        store.discard(staged)

    store.remove_refs(plan.paths + [ref_path(r) for r in replaced])
    return db[collection].find_one({"_id": record["_id"]})


def slot_refs(record: Dict[str, Any], slot_fields: Dict[str, SlotTarget]) -> List[Any]:
    refs = list(record.get("documents") or [])
    for slot in sorted({target[0] for target in slot_fields.values()}):
        if record.get(slot):
            refs.append(record[slot])
    return refs


def resolve_staff(db, ref: Optional[str]) -> Optional[Dict[str, Any]]:
    """Find a staff member by Mongo id, staff code, staff identifier or email."""
    if not ref or not str(ref).strip():
        return None
    candidate = str(ref).strip()
    projection = {"staff_code": 1, "staff_id": 1, "full_name": 1, "email": 1}
    if ObjectId.is_valid(candidate):
        staff = db[STAFF].find_one({"_id": ObjectId(candidate)}, projection)
        if staff:
            return staff
    return db[STAFF].find_one(
        {"$or": [{"staff_code": candidate}, {"staff_id": candidate}, {"email": candidate.lower()}]},
        projection,
    )


# -------------------- Meta endpoints -------------------- #

@app.get("/")
def read_root():
    return {"message": "School Administration Backend is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "Running",
        "database": "Not Available",
        "database_name": None,
        "collections": [],
    }
    if database.db is not None:
        response["database_name"] = settings.DATABASE_NAME
        try:
            response["collections"] = database.db.list_collection_names()[:50]
            response["database"] = "Connected"
        except Exception as e:
            response["database"] = f"Connected but Error: {str(e)[:80]}"
    return response


# -------------------- Auth endpoints -------------------- #

@app.post("/api/auth/login")
def login(payload: LoginPayload, db=Depends(get_db)):
    email = payload.email.strip().lower()
    password = payload.password.strip()
    if not email or not password:
        raise HTTPException(status_code=400, detail="Email and password are required")
    user = db[USERS].find_one({"email": email})
    if not user or not verify_password(password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if user.get("role") not in ("SuperAdmin", "Admin", "Staff"):
        raise HTTPException(status_code=403, detail="Access denied: insufficient role")
    token = create_access_token({"sub": str(user["_id"]), "typ": "user"}, settings.JWT_SECRET)
    logger.info("User logged in", user_code=user.get("user_code"))
    return {"token": token, "user": serialize_doc(user)}


@app.get("/api/auth/me")
def get_me(user=Depends(require_roles())):
    return serialize_doc(user)


@app.post("/api/student-auth/login")
def student_login(payload: StudentLoginPayload, db=Depends(get_db)):
    username = payload.username.strip().lower()
    if not username or not payload.password:
        raise HTTPException(status_code=400, detail="Username and password required")
    auth = db[STUDENT_AUTH].find_one({"username": username})
    if not auth or not verify_password(payload.password, auth.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    student = db[STUDENTS].find_one({"_id": ObjectId(auth["student_id"])})
    token = create_access_token(
        {"sub": str(auth["_id"]), "typ": "student"}, settings.STUDENT_JWT_SECRET
    )
    return {"token": token, "student": serialize_doc(student)}


@app.get("/api/student-auth/me")
def student_me(student=Depends(get_current_student)):
    return serialize_doc(student)


# -------------------- Users -------------------- #

def user_summary(db, user: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize_doc(user)
    staff = None
    if user.get("staff_id") and ObjectId.is_valid(user["staff_id"]):
        staff = db[STAFF].find_one(
            {"_id": ObjectId(user["staff_id"])},
            {"full_name": 1, "staff_code": 1, "staff_id": 1, "email": 1},
        )
    out["staff"] = serialize_doc(staff)
    return out


@app.post("/api/users", status_code=201)
async def create_user(
    request: Request,
    db=Depends(get_db),
    store: AttachmentStore = Depends(get_store),
    requester=Depends(require_roles(*ADMIN_ROLES)),
):
    fields, uploads = await read_form(request)
    password = fields.pop("password", None)
    if "staff_id" in fields and "staff_ref" not in fields:
        fields["staff_ref"] = fields.pop("staff_id")
    if not fields.get("full_name") or not fields.get("email") or not password:
        raise HTTPException(status_code=400, detail="Missing required fields: full_name, email, password")
    payload: User = parse_model(User, fields)

    staff = None
    if payload.role == "Staff":
        staff = resolve_staff(db, payload.staff_ref)
        if staff is None:
            raise HTTPException(status_code=400, detail="Invalid or missing staff reference for Staff role")
    if db[USERS].find_one({"email": payload.email}):
        raise HTTPException(status_code=400, detail="Email already used")

    user_id = ObjectId()
    user_code = next_code("userId", "USER")
    record = {
        "_id": user_id,
        "user_code": user_code,
        "full_name": payload.full_name,
        "email": payload.email,
        "password_hash": hash_password(password),
        "role": payload.role,
        "staff_id": str(staff["_id"]) if staff else None,
        "staff_code": staff.get("staff_code") if staff else None,
        "staff_identifier": staff.get("staff_id") if staff else None,
        "avatar": None,
        "created_by": actor_code(requester),
        "updated_by": None,
    }
    staged = stage_uploads(store, uploads, USER_SLOTS, allow_documents=False)
    owner = OwnerKey(OwnerType.USER, str(user_id), user_code)
    insert_with_attachments(store, USERS, record, owner, staged, USER_SLOTS, has_documents=False)
    logger.info("User created", user_code=user_code)
    return {"message": "User created", "user": user_summary(db, db[USERS].find_one({"_id": user_id}))}


@app.get("/api/users")
def list_users(db=Depends(get_db), user=Depends(require_roles())):
    users = list(db[USERS].find({}, {"password_hash": 0}))
    staff_ids = [ObjectId(u["staff_id"]) for u in users if u.get("staff_id") and ObjectId.is_valid(u["staff_id"])]
    staff_lookup = {}
    if staff_ids:
        for s in db[STAFF].find({"_id": {"$in": staff_ids}}, {"full_name": 1, "staff_code": 1, "staff_id": 1, "email": 1}):
            staff_lookup[str(s["_id"])] = serialize_doc(s)
    out = with_actor_info(db, users)
    for item, u in zip(out, users):
        item["staff"] = staff_lookup.get(u.get("staff_id"))
    return out


@app.get("/api/users/{user_id}")
def get_user(user_id: str, db=Depends(get_db), user=Depends(require_roles())):
    found = db[USERS].find_one({"_id": object_id(user_id, "user id")}, {"password_hash": 0})
    if not found:
        raise HTTPException(status_code=404, detail="User not found")
    out = with_actor_info(db, [found])[0]
    out["staff"] = user_summary(db, found)["staff"]
    return out


@app.put("/api/users/{user_id}")
async def update_user(
    user_id: str,
    request: Request,
    db=Depends(get_db),
    store: AttachmentStore = Depends(get_store),
    requester=Depends(require_roles()),
):
    oid = object_id(user_id, "user id")
    if requester["_id"] != oid and requester.get("role") not in ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Forbidden")
    user = db[USERS].find_one({"_id": oid})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    fields, uploads = await read_form(request)
    if "staff_id" in fields and "staff_ref" not in fields:
        fields["staff_ref"] = fields.pop("staff_id")
    payload: UserUpdate = parse_model(UserUpdate, fields)
    changes = payload.model_dump(exclude_unset=True)

    staff_ref = changes.pop("staff_ref", None)
    role = changes.get("role")
    if role is not None and requester.get("role") not in ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Only administrators can change roles")
    if (role or user.get("role")) == "Staff":
        if staff_ref is not None:
            staff = resolve_staff(db, staff_ref)
            if staff is None:
                raise HTTPException(status_code=400, detail="Invalid staff reference for Staff role")
            changes.update(
                staff_id=str(staff["_id"]),
                staff_code=staff.get("staff_code"),
                staff_identifier=staff.get("staff_id"),
            )
        elif not user.get("staff_id"):
            raise HTTPException(status_code=400, detail="Staff reference is required for Staff role")
    elif role is not None:
        changes.update(staff_id=None, staff_code=None, staff_identifier=None)

    if changes.get("email") and changes["email"] != user.get("email"):
        if db[USERS].find_one({"email": changes["email"]}):
            raise HTTPException(status_code=400, detail="Email already in use")
    if "password" in changes:
        changes["password_hash"] = hash_password(changes.pop("password"))
    changes["updated_by"] = actor_code(requester)

    staged = stage_uploads(store, uploads, USER_SLOTS, allow_documents=False)
    owner = OwnerKey(OwnerType.USER, str(oid), user.get("user_code") or str(oid))
    updated = update_with_attachments(
        db, store, USERS, user, owner, staged, USER_SLOTS, changes,
        removed=pop_removed_files(fields), has_documents=False,
    )
    return {"message": "User updated", "user": user_summary(db, updated)}


@app.delete("/api/users/{user_id}")
def delete_user(
    user_id: str,
    db=Depends(get_db),
    store: AttachmentStore = Depends(get_store),
    requester=Depends(require_roles(*ADMIN_ROLES)),
):
    oid = object_id(user_id, "user id")
    if requester["_id"] == oid:
        raise HTTPException(status_code=400, detail="Cannot delete yourself")
    user = db[USERS].find_one({"_id": oid})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user.get("role") == "SuperAdmin":
        if requester.get("role") != "SuperAdmin":
            raise HTTPException(status_code=403, detail="Only SuperAdmin can delete another SuperAdmin")
        if db[USERS].count_documents({"role": "SuperAdmin"}) <= 1:
            raise HTTPException(status_code=400, detail="Cannot delete the last SuperAdmin")

    db[USERS].delete_one({"_id": oid})
    owner = OwnerKey(OwnerType.USER, str(oid), user.get("user_code") or str(oid))
    store.purge_owner(owner, slot_refs(user, USER_SLOTS))
    logger.info("User deleted", user_code=user.get("user_code"))
    return {"message": "User deleted along with avatar and folder"}


# -------------------- Staff -------------------- #

def check_staff_conflicts(db, changes: Dict[str, Any], current: Optional[Dict[str, Any]] = None):
    for key, label in (("staff_id", "Staff ID"), ("email", "Email")):
        value = changes.get(key)
        if value is None or (current and current.get(key) == value):
            continue
        if db[STAFF].find_one({key: value}):
            raise HTTPException(status_code=400, detail=f"{label} already used")


@app.post("/api/staff", status_code=201)
async def create_staff(
    request: Request,
    db=Depends(get_db),
    store: AttachmentStore = Depends(get_store),
    requester=Depends(require_roles(*ADMIN_ROLES)),
):
    fields, uploads = await read_form(request)
    if not all(fields.get(k) for k in ("full_name", "staff_id", "email")):
        raise HTTPException(status_code=400, detail="Missing required fields: full_name, staff_id, email")
    payload: Staff = parse_model(Staff, fields)
    check_staff_conflicts(db, payload.model_dump())

    staff_id = ObjectId()
    staff_code = next_code("staffCode", "STAFF")
    record = {
        **mongo_dump(payload),
        "_id": staff_id,
        "staff_code": staff_code,
        "documents": [],
        "photo": None,
        "created_by": actor_code(requester),
        "updated_by": None,
    }
    staged = stage_uploads(store, uploads, STAFF_SLOTS)
    owner = OwnerKey(OwnerType.STAFF, str(staff_id), staff_code)
    insert_with_attachments(store, STAFF, record, owner, staged, STAFF_SLOTS)
    logger.info("Staff created", staff_code=staff_code, documents=len(record["documents"]))
    return {"message": "Staff created", "staff": serialize_doc(db[STAFF].find_one({"_id": staff_id}))}


@app.get("/api/staff")
def list_staff(db=Depends(get_db), user=Depends(require_roles())):
    return with_actor_info(db, get_documents(STAFF))


@app.get("/api/staff/{staff_id}")
def get_staff(staff_id: str, db=Depends(get_db), user=Depends(require_roles())):
    staff = db[STAFF].find_one({"_id": object_id(staff_id, "staff id")})
    if not staff:
        raise HTTPException(status_code=404, detail="Staff not found")
    return with_actor_info(db, [staff])[0]


@app.put("/api/staff/{staff_id}")
async def update_staff(
    staff_id: str,
    request: Request,
    db=Depends(get_db),
    store: AttachmentStore = Depends(get_store),
    requester=Depends(require_roles(*ADMIN_ROLES)),
):
    staff = db[STAFF].find_one({"_id": object_id(staff_id, "staff id")})
    if not staff:
        raise HTTPException(status_code=404, detail="Staff not found")

    fields, uploads = await read_form(request)
    removed = pop_removed_files(fields)
    payload: StaffBase = parse_model(StaffBase, fields)
    changes = mongo_dump(payload, exclude_unset=True)
    check_staff_conflicts(db, changes, staff)
    changes["updated_by"] = actor_code(requester)

    staged = stage_uploads(store, uploads, STAFF_SLOTS)
    owner = OwnerKey(OwnerType.STAFF, str(staff["_id"]), staff["staff_code"])
    updated = update_with_attachments(
        db, store, STAFF, staff, owner, staged, STAFF_SLOTS, changes, removed=removed
    )
    return {"message": "Staff updated", "staff": serialize_doc(updated)}


@app.delete("/api/staff/{staff_id}")
def delete_staff(
    staff_id: str,
    db=Depends(get_db),
    store: AttachmentStore = Depends(get_store),
    requester=Depends(require_roles(*ADMIN_ROLES)),
):
    oid = object_id(staff_id, "staff id")
    staff = db[STAFF].find_one({"_id": oid})
    if not staff:
        raise HTTPException(status_code=404, detail="Staff not found")

    db[STAFF].delete_one({"_id": oid})
    sid = str(oid)
    for cls in db[CLASSES].find({"sections.staff_id": sid}):
        sections = [
            {**s, "staff_id": None, "staff_code": None, "staff_identifier": None}
            if s.get("staff_id") == sid else s
            for s in cls.get("sections", [])
        ]
        db[CLASSES].update_one({"_id": cls["_id"]}, {"$set": {"sections": sections}})
    db[USERS].update_many(
        {"staff_id": sid},
        {"$set": {"staff_id": None, "staff_code": None, "staff_identifier": None}},
    )

    owner = OwnerKey(OwnerType.STAFF, sid, staff["staff_code"])
    store.purge_owner(owner, slot_refs(staff, STAFF_SLOTS))
    logger.info("Staff deleted", staff_code=staff["staff_code"])
    return {"message": "Staff deleted along with documents and folder"}


# -------------------- Students -------------------- #

def resolve_class_refs(db, class_id: Optional[str], section_id: Optional[str]) -> Dict[str, Any]:
    if not class_id:
        if section_id:
            raise HTTPException(status_code=400, detail="section_id requires class_id")
        return {}
    cls = db[CLASSES].find_one({"_id": object_id(class_id, "class id")})
    if not cls:
        raise HTTPException(status_code=400, detail="Class not found")
    refs = {
        "class_id": str(cls["_id"]),
        "class_name": cls.get("class_name", ""),
        "class_code": cls.get("class_code", ""),
        "section_id": None,
        "section_name": "",
    }
    if section_id:
        section = next((s for s in cls.get("sections", []) if s.get("id") == section_id), None)
        if section is None:
            raise HTTPException(status_code=400, detail="Section not found in class")
        refs.update(section_id=section["id"], section_name=section["name"])
    return refs


def login_name_for(username: Optional[str], admission_no: str) -> str:
    return (username or admission_no).strip().lower()


def check_login_available(db, username: str, student_id: Optional[str] = None) -> None:
    clash = db[STUDENT_AUTH].find_one({"username": username})
    if clash and clash.get("student_id") != student_id:
        raise HTTPException(status_code=400, detail="Username already used")


def upsert_student_login(db, student: Dict[str, Any], username: Optional[str], password: str) -> None:
    username = login_name_for(username, student["admission_no"])
    check_login_available(db, username, str(student["_id"]))
    existing = db[STUDENT_AUTH].find_one({"student_id": str(student["_id"])})
    if existing:
        db[STUDENT_AUTH].update_one(
            {"_id": existing["_id"]},
            {"$set": {"username": username, "password_hash": hash_password(password), "updated_at": utcnow()}},
        )
        auth_id = existing["_id"]
    else:
        auth = StudentAuth(
            username=username,
            admission_no=student["admission_no"],
            password_hash=hash_password(password),
            student_id=str(student["_id"]),
        )
        auth_id = ObjectId(create_document(STUDENT_AUTH, auth))
    db[STUDENTS].update_one(
        {"_id": student["_id"]},
        {"$set": {"student_auth_id": str(auth_id), "login_username": username, "has_login": True}},
    )


def check_student_conflicts(db, changes: Dict[str, Any], current: Optional[Dict[str, Any]] = None):
    for key, label in (("admission_no", "Admission Number"), ("email", "Email"), ("roll_number", "Roll Number")):
        value = changes.get(key)
        if value is None or (current and current.get(key) == value):
            continue
        if db[STUDENTS].find_one({key: value}):
            raise HTTPException(status_code=400, detail=f"{label} already used")


@app.post("/api/students", status_code=201)
async def create_student(
    request: Request,
    db=Depends(get_db),
    store: AttachmentStore = Depends(get_store),
    requester=Depends(require_roles(*ADMIN_ROLES)),
):
    fields, uploads = await read_form(request)
    password = fields.pop("password", None)
    username = fields.pop("username", None)
    if not all(fields.get(k) for k in ("full_name", "admission_no", "email")):
        raise HTTPException(status_code=400, detail="Missing required fields: full_name, admission_no, email")
    payload: Student = parse_model(Student, fields)
    check_student_conflicts(db, payload.model_dump())
    login_name = login_name_for(username, payload.admission_no)
    if password:
        check_login_available(db, login_name)
    class_refs = resolve_class_refs(db, payload.class_id, payload.section_id)

    student_id = ObjectId()
    student_code = next_code("studentCode", "STUD")
    record = {
        **mongo_dump(payload),
        **class_refs,
        "_id": student_id,
        "student_code": student_code,
        "role": "Student",
        "documents": [],
        "student_photo": None,
        "father_photo": None,
        "mother_photo": None,
        "student_auth_id": None,
        "login_username": "",
        "has_login": False,
        "created_by": actor_code(requester),
        "updated_by": actor_code(requester),
    }
    staged = stage_uploads(store, uploads, STUDENT_SLOTS)
    owner = OwnerKey(OwnerType.STUDENT, str(student_id), student_code)
    insert_with_attachments(store, STUDENTS, record, owner, staged, STUDENT_SLOTS)
    if password:
        upsert_student_login(db, record, login_name, password)
    logger.info("Student created", student_code=student_code)
    return {"message": "Student created", "student": serialize_doc(db[STUDENTS].find_one({"_id": student_id}))}


@app.get("/api/students")
def list_students(db=Depends(get_db), user=Depends(require_roles())):
    return with_actor_info(db, get_documents(STUDENTS))


@app.get("/api/students/{student_id}")
def get_student(student_id: str, db=Depends(get_db), user=Depends(require_roles())):
    student = db[STUDENTS].find_one({"_id": object_id(student_id, "student id")})
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    return with_actor_info(db, [student])[0]


@app.put("/api/students/{student_id}")
async def update_student(
    student_id: str,
    request: Request,
    db=Depends(get_db),
    store: AttachmentStore = Depends(get_store),
    requester=Depends(require_roles(*ADMIN_ROLES)),
):
    student = db[STUDENTS].find_one({"_id": object_id(student_id, "student id")})
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")

    fields, uploads = await read_form(request)
    removed = pop_removed_files(fields)
    password = fields.pop("password", None)
    username = fields.pop("username", None)
    payload: StudentBase = parse_model(StudentBase, fields)
    changes = mongo_dump(payload, exclude_unset=True)
    check_student_conflicts(db, changes, student)
    if "class_id" in changes or "section_id" in changes:
        changes.update(resolve_class_refs(
            db,
            changes.get("class_id", student.get("class_id")),
            changes.get("section_id"),
        ))
    changes["updated_by"] = actor_code(requester)
    if password:
        login_name = login_name_for(
            username or student.get("login_username"),
            changes.get("admission_no", student["admission_no"]),
        )
        check_login_available(db, login_name, str(student["_id"]))

    staged = stage_uploads(store, uploads, STUDENT_SLOTS)
    owner = OwnerKey(OwnerType.STUDENT, str(student["_id"]), student["student_code"])
    updated = update_with_attachments(
        db, store, STUDENTS, student, owner, staged, STUDENT_SLOTS, changes, removed=removed
    )
    if password:
        upsert_student_login(db, updated, login_name, password)
        updated = db[STUDENTS].find_one({"_id": student["_id"]})
    return {"message": "Student updated", "student": serialize_doc(updated)}


@app.delete("/api/students/{student_id}")
def delete_student(
    student_id: str,
    db=Depends(get_db),
    store: AttachmentStore = Depends(get_store),
    requester=Depends(require_roles(*ADMIN_ROLES)),
):
    oid = object_id(student_id, "student id")
    student = db[STUDENTS].find_one({"_id": oid})
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")

    db[STUDENTS].delete_one({"_id": oid})
    db[STUDENT_AUTH].delete_many({"student_id": str(oid)})
    db[ATTENDANCE].delete_many({"student_id": str(oid)})

    owner = OwnerKey(OwnerType.STUDENT, str(oid), student["student_code"])
    store.purge_owner(owner, slot_refs(student, STUDENT_SLOTS))
    logger.info("Student deleted", student_code=student["student_code"])
    return {"message": "Student deleted along with documents and folder"}


# -------------------- Classes -------------------- #

def normalize_sections(db, sections: List[SectionIn]) -> List[Dict[str, Any]]:
    out = []
    for s in sections:
        staff = None
        if s.staff is not None and s.staff.strip():
            staff = resolve_staff(db, s.staff)
            if staff is None:
                raise HTTPException(status_code=400, detail=f"Staff not found for: {s.staff}")
        out.append({
            "id": str(ObjectId()),
            "name": s.name,
            "staff_id": str(staff["_id"]) if staff else None,
            "staff_code": staff.get("staff_code") if staff else None,
            "staff_identifier": staff.get("staff_id") if staff else None,
        })
    return out


@app.post("/api/classes", status_code=201)
def create_class(payload: Classroom, db=Depends(get_db), user=Depends(require_roles(*ADMIN_ROLES))):
    sections = normalize_sections(db, payload.sections)
    class_code = next_code("classCode", "CLASS")
    cid = create_document(CLASSES, {
        "class_code": class_code,
        "class_name": payload.class_name,
        "sections": sections,
        "created_by": actor_code(user),
        "updated_by": None,
    })
    return {"message": "Class created", "class": serialize_doc(db[CLASSES].find_one({"_id": ObjectId(cid)}))}


@app.get("/api/classes")
def list_classes(db=Depends(get_db), user=Depends(require_roles())):
    return serialize_list(get_documents(CLASSES))


@app.get("/api/classes/{class_id}")
def get_class(class_id: str, db=Depends(get_db), user=Depends(require_roles())):
    cls = db[CLASSES].find_one({"_id": object_id(class_id, "class id")})
    if not cls:
        raise HTTPException(status_code=404, detail="Class not found")
    return serialize_doc(cls)


@app.put("/api/classes/{class_id}")
def update_class(
    class_id: str,
    payload: ClassroomUpdate,
    db=Depends(get_db),
    user=Depends(require_roles(*ADMIN_ROLES)),
):
    oid = object_id(class_id, "class id")
    if not db[CLASSES].find_one({"_id": oid}):
        raise HTTPException(status_code=404, detail="Class not found")
    update: Dict[str, Any] = {"updated_by": actor_code(user), "updated_at": utcnow()}
    if payload.class_name:
        update["class_name"] = payload.class_name
    if payload.sections is not None:
        update["sections"] = normalize_sections(db, payload.sections)
    db[CLASSES].update_one({"_id": oid}, {"$set": update})
    return {"message": "Class updated", "class": serialize_doc(db[CLASSES].find_one({"_id": oid}))}


@app.delete("/api/classes/{class_id}")
def delete_class(class_id: str, db=Depends(get_db), user=Depends(require_roles(*ADMIN_ROLES))):
    res = db[CLASSES].delete_one({"_id": object_id(class_id, "class id")})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Class not found")
    return {"message": "Class deleted"}


# -------------------- Attendance -------------------- #

def attendance_day(d: date) -> datetime:
    return datetime(d.year, d.month, d.day)


@app.post("/api/attendance/mark", status_code=201)
def mark_attendance(
    payload: AttendanceMark,
    db=Depends(get_db),
    user=Depends(require_roles("Staff", *ADMIN_ROLES)),
):
    cls = db[CLASSES].find_one({"_id": object_id(payload.class_id, "class id")})
    if not cls:
        raise HTTPException(status_code=404, detail="Class not found")
    section = next((s for s in cls.get("sections", []) if s.get("name") == payload.section), None)
    if section is None:
        raise HTTPException(status_code=400, detail="Section not found")
    if user.get("role") not in ADMIN_ROLES and (
        not user.get("staff_id") or section.get("staff_id") != user.get("staff_id")
    ):
        raise HTTPException(status_code=403, detail="You are not assigned to this section")

    day = attendance_day(payload.date)
    by = actor_code(user)
    marked = []
    for entry in payload.records:
        if not ObjectId.is_valid(entry.student_id):
            continue
        student = db[STUDENTS].find_one({"_id": ObjectId(entry.student_id)})
        if not student:
            continue
        if student.get("class_id") != payload.class_id or student.get("section_name") != payload.section:
            continue
        existing = db[ATTENDANCE].find_one({"student_id": entry.student_id, "date": day})
        fields = {
            "status": entry.status,
            "class_id": payload.class_id,
            "section": payload.section,
            "marked_by": user.get("staff_id"),
            "updated_by": by,
        }
        if existing:
            db[ATTENDANCE].update_one({"_id": existing["_id"]}, {"$set": {**fields, "updated_at": utcnow()}})
            record_id = existing["_id"]
        else:
            record_id = ObjectId(create_document(ATTENDANCE, {
                **fields,
                "attendance_code": next_code("attendanceCode", "ATTEND"),
                "student_id": entry.student_id,
                "date": day,
                "created_by": by,
            }))
        marked.append(db[ATTENDANCE].find_one({"_id": record_id}))
    return {"message": "Attendance marked", "records": serialize_list(marked)}


def with_student_info(db, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    ids = [ObjectId(r["student_id"]) for r in records if ObjectId.is_valid(r.get("student_id", ""))]
    lookup = {}
    if ids:
        for s in db[STUDENTS].find({"_id": {"$in": ids}}, {"student_code": 1, "full_name": 1, "class_name": 1, "section_name": 1}):
            lookup[str(s["_id"])] = serialize_doc(s)
    out = []
    for r in records:
        item = serialize_doc(r)
        item["student"] = lookup.get(r.get("student_id"))
        out.append(item)
    return out


@app.get("/api/attendance/class/{class_id}/section/{section}")
def attendance_by_class_section(
    class_id: str,
    section: str,
    day: Optional[date] = Query(None, alias="date"),
    db=Depends(get_db),
    user=Depends(require_roles("Staff", *ADMIN_ROLES)),
):
    filt: Dict[str, Any] = {"class_id": class_id, "section": section}
    if day:
        filt["date"] = attendance_day(day)
    return with_student_info(db, list(db[ATTENDANCE].find(filt)))


@app.put("/api/attendance/{attendance_id}")
def update_attendance(
    attendance_id: str,
    payload: AttendanceUpdate,
    db=Depends(get_db),
    user=Depends(require_roles("Staff", *ADMIN_ROLES)),
):
    oid = object_id(attendance_id, "attendance id")
    res = db[ATTENDANCE].update_one(
        {"_id": oid},
        {"$set": {"status": payload.status, "updated_by": actor_code(user), "updated_at": utcnow()}},
    )
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Attendance record not found")
    return {"message": "Attendance updated", "attendance": serialize_doc(db[ATTENDANCE].find_one({"_id": oid}))}


@app.get("/api/attendance/student/{student_id}")
def attendance_by_student(
    student_id: str,
    db=Depends(get_db),
    user=Depends(require_roles("Staff", *ADMIN_ROLES)),
):
    object_id(student_id, "student id")
    records = list(db[ATTENDANCE].find({"student_id": student_id}).sort("date", 1))
    return serialize_list(records)


# -------------------- Run -------------------- #

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
