# main.py
import logging
from datetime import datetime, timedelta
from io import BytesIO
from typing import List, Optional, Dict, Any

from fastapi import FastAPI, Query, HTTPException, Depends, status, Request, File, Form, UploadFile
from fastapi.security import OAuth2PasswordBearer
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse

from jose import JWTError, jwt
from pydantic import BaseModel, Field, EmailStr
from sqlalchemy.ext.asyncio import AsyncSession

import anomaly_report
import catalog_service
import config
import share_service
import upload_service
from db import SessionLocal, User as DBUser, CsvUpload as DBCsvUpload
from errors import AppError
from object_storage import LocalObjectStorage, object_storage
from share_service import RequestContext
from upload_service import UploadSubmission
from validation import parse_csv_content

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl=config.AUTH_TOKEN_URL)
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl=config.AUTH_TOKEN_URL, auto_error=False)

app = FastAPI(
    title="Learning Platform Data API",
    description="Courses, enrollments and quizzes plus CSV uploads with anomaly results and token-gated sharing.",
    version="2.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup_event():
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    object_storage.ensure_root()
    logger.info("Object storage root: %s", object_storage.root.resolve())

@app.on_event("shutdown")
async def shutdown_event():
    await object_storage.wait_for_cleanups()

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500: logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

# --- Schemas ---
class UserInDB(BaseModel):
    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str
    is_approved: bool
    created_at: datetime

    class Config:
        from_attributes = True

class ApprovalUpdate(BaseModel):
    is_approved: bool

class CourseCreate(BaseModel):
    title: str = Field(min_length=3, max_length=200)
    description: str
    level: str = Field(pattern="^(beginner|intermediate|advanced)$")
    price: int = Field(ge=0)
    category: Optional[str] = Field(None, max_length=50)

class CourseInDB(CourseCreate):
    id: str
    rating: int
    owner_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True

class EnrollmentInDB(BaseModel):
    id: str
    user_id: str
    course_id: str
    progress: int
    completed: bool
    enrolled_at: datetime
    completion_date: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class ProgressUpdate(BaseModel):
    progress: int

class QuizCreate(BaseModel):
    title: str = Field(min_length=3, max_length=200)
    questions: List[Dict[str, Any]]

class QuizInDB(QuizCreate):
    id: str
    course_id: str
    created_at: datetime

    class Config:
        from_attributes = True

class QuizResultCreate(BaseModel):
    score: int
    total_questions: int
    answers: Any

class QuizResultInDB(QuizResultCreate):
    id: str
    user_id: str
    quiz_id: str
    completed_at: datetime

    class Config:
        from_attributes = True

class SupportMessageCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    email: EmailStr
    subject: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1)

class SupportMessageInDB(BaseModel):
    id: str
    user_id: Optional[str] = None
    name: str
    email: str
    subject: str
    message: str
    status: str
    created_at: datetime

    class Config:
        from_attributes = True

class UploadCreate(BaseModel):
    filename: str = Field(min_length=1, max_length=255)
    custom_filename: str = Field(min_length=1, max_length=255)
    file_size: Optional[int] = Field(None, ge=0)
    column_count: Optional[int] = Field(None, ge=0)
    row_count: Optional[int] = Field(None, ge=0)
    time_series_data: List[Dict[str, Any]]
    file_metadata: Optional[Dict[str, Any]] = None

class UploadSummary(BaseModel):
    id: str
    user_id: str
    filename: str
    custom_filename: str
    storage_url: str
    storage_path: str
    file_size: int
    column_count: int
    row_count: int
    status: str
    file_metadata: Optional[Dict[str, Any]] = None
    uploaded_at: datetime
    processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class UploadInDB(UploadSummary):
    time_series_data: List[Dict[str, Any]]

class UploadUpdate(BaseModel):
    custom_filename: Optional[str] = Field(None, min_length=1, max_length=255)
    status: Optional[str] = Field(None, pattern="^(uploaded|processing|completed|error)$")

class AnomalyCreate(BaseModel):
    anomaly_type: str = Field(min_length=1, max_length=50)
    detected_date: str = Field(min_length=1, max_length=50)
    week_before_value: Optional[float] = None
    p90_value: Optional[float] = None
    description: str = Field(min_length=1)
    openai_analysis: Optional[str] = None

class AnomalyInDB(AnomalyCreate):
    id: str
    upload_id: str
    created_at: datetime

    class Config:
        from_attributes = True

class UserAnomaly(AnomalyInDB):
    upload_filename: str
    upload_custom_filename: str

class ShareCreate(BaseModel):
    permissions: str = Field(default="view_only", pattern="^(view_only|view_download)$")
    expiration_option: Optional[str] = Field(None, pattern="^(24h|7d|30d|never)$")
    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = None

class ShareUpdate(BaseModel):
    permissions: Optional[str] = Field(None, pattern="^(view_only|view_download)$")
    expiration_option: Optional[str] = Field(None, pattern="^(24h|7d|30d|never)$")
    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = None

class ShareCreated(BaseModel):
    id: str
    share_token: str
    share_url: str
    permissions: str
    expires_at: Optional[datetime] = None
    created_at: datetime

class SharedUploadRef(BaseModel):
    id: str
    filename: str
    custom_filename: str
    uploaded_at: datetime

class ShareInDB(BaseModel):
    id: str
    share_token: str
    share_url: str
    title: Optional[str] = None
    description: Optional[str] = None
    permissions: str
    expires_at: Optional[datetime] = None
    view_count: int
    created_at: datetime
    updated_at: datetime
    upload: SharedUploadRef

class AccessLogInDB(BaseModel):
    accessed_at: datetime
    action: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    class Config:
        from_attributes = True

class SharedUploadView(BaseModel):
    id: str
    filename: str
    custom_filename: str
    row_count: int
    column_count: int
    uploaded_at: datetime
    status: str
    time_series_data: List[Dict[str, Any]]

    class Config:
        from_attributes = True

class SharedBy(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None

class SharedResultView(BaseModel):
    id: str
    title: Optional[str] = None
    description: Optional[str] = None
    permissions: str
    can_download: bool
    view_count: int
    expires_at: Optional[datetime] = None
    shared_at: datetime
    shared_by: SharedBy
    upload: SharedUploadView
    anomalies: List[AnomalyInDB]

# --- Dependencies ---
async def get_db():
    async with SessionLocal() as session:
        yield session

def get_storage() -> LocalObjectStorage:
    return object_storage

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire_time = datetime.utcnow() + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire_time, "sub": str(data.get("sub"))})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)

async def _user_from_token(token: str, db: AsyncSession) -> DBUser:
    credentials_exception = HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Could not validate credentials", headers={"WWW-Authenticate": "Bearer"})
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        user_id: Optional[str] = payload.get("sub")
        if not user_id: raise credentials_exception
    except JWTError: raise credentials_exception
    return await catalog_service.upsert_user(db, str(user_id), email=payload.get("email"), first_name=payload.get("first_name"),
                                             last_name=payload.get("last_name"), profile_image_url=payload.get("picture"))

async def get_current_user(token: str = Depends(oauth2_scheme), db: AsyncSession = Depends(get_db)) -> DBUser:
    return await _user_from_token(token, db)

async def get_optional_user(token: Optional[str] = Depends(optional_oauth2_scheme), db: AsyncSession = Depends(get_db)) -> Optional[DBUser]:
    return await _user_from_token(token, db) if token else None

def require_role(*roles: str):
    async def role_checker(current_user: DBUser = Depends(get_current_user)):
        if current_user.role not in roles: raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Operation not permitted for role: '{current_user.role}'")
        return current_user
    return role_checker

def request_context(request: Request) -> RequestContext:
    return RequestContext(ip_address=request.client.host if request.client else None, user_agent=request.headers.get("user-agent"))

def share_url(token: str) -> str:
    return f"{config.PUBLIC_BASE_URL}/shared/{token}"

# --- Users ---
@app.get("/users/me", response_model=UserInDB, tags=["Users"])
async def read_current_user_me_api(current_user: DBUser = Depends(get_current_user)): return current_user

@app.patch("/admin/users/{user_id}/approval", response_model=UserInDB, tags=["Admin"])
async def set_user_approval_api(user_id: str, body: ApprovalUpdate, db: AsyncSession = Depends(get_db), current_user: DBUser = Depends(require_role("admin"))):
    return await catalog_service.set_user_approval(db, user_id, body.is_approved)

# --- Courses ---
@app.get("/courses", response_model=List[CourseInDB], tags=["Courses"])
async def get_all_courses_api(level: Optional[str] = Query(None, pattern="^(beginner|intermediate|advanced)$"), skip: int = Query(0, ge=0), limit: int = Query(20, ge=1, le=100), db: AsyncSession = Depends(get_db)):
    return await catalog_service.list_courses(db, level=level, skip=skip, limit=limit)

@app.post("/courses", response_model=CourseInDB, status_code=status.HTTP_201_CREATED, tags=["Courses"])
async def create_new_course_api(course_in: CourseCreate, db: AsyncSession = Depends(get_db), current_user: DBUser = Depends(require_role("admin"))):
    return await catalog_service.create_course(db, owner_id=current_user.id, **course_in.model_dump())

@app.get("/courses/{course_id}", response_model=CourseInDB, tags=["Courses"])
async def get_course_api(course_id: str, db: AsyncSession = Depends(get_db)):
    return await catalog_service.get_course(db, course_id)

@app.post("/courses/{course_id}/enroll", response_model=EnrollmentInDB, tags=["Enrollments"])
async def enroll_in_course_api(course_id: str, db: AsyncSession = Depends(get_db), current_user: DBUser = Depends(get_current_user)):
    return await catalog_service.enroll(db, current_user.id, course_id)

@app.get("/users/me/enrollments", response_model=List[EnrollmentInDB], tags=["Enrollments"])
async def get_my_enrollments_api(db: AsyncSession = Depends(get_db), current_user: DBUser = Depends(get_current_user)):
    return await catalog_service.list_user_enrollments(db, current_user.id)

@app.patch("/enrollments/{enrollment_id}/progress", response_model=EnrollmentInDB, tags=["Enrollments"])
async def update_enrollment_progress_api(enrollment_id: str, body: ProgressUpdate, db: AsyncSession = Depends(get_db), current_user: DBUser = Depends(get_current_user)):
    enrollment = await catalog_service.get_owned_enrollment(db, enrollment_id, current_user.id)
    return await catalog_service.update_progress(db, enrollment, body.progress)

@app.post("/courses/{course_id}/quizzes", response_model=QuizInDB, status_code=status.HTTP_201_CREATED, tags=["Quizzes"])
async def create_quiz_api(course_id: str, quiz_in: QuizCreate, db: AsyncSession = Depends(get_db), current_user: DBUser = Depends(require_role("admin"))):
    return await catalog_service.create_quiz(db, course_id, quiz_in.title, quiz_in.questions)

@app.get("/courses/{course_id}/quizzes", response_model=List[QuizInDB], tags=["Quizzes"])
async def get_course_quizzes_api(course_id: str, db: AsyncSession = Depends(get_db)):
    await catalog_service.get_course(db, course_id)
    return await catalog_service.list_course_quizzes(db, course_id)

@app.post("/quizzes/{quiz_id}/results", response_model=QuizResultInDB, status_code=status.HTTP_201_CREATED, tags=["Quizzes"])
async def submit_quiz_result_api(quiz_id: str, result_in: QuizResultCreate, db: AsyncSession = Depends(get_db), current_user: DBUser = Depends(get_current_user)):
    return await catalog_service.submit_quiz_result(db, current_user.id, quiz_id, result_in.score, result_in.total_questions, result_in.answers)

@app.get("/users/me/quiz-results", response_model=List[QuizResultInDB], tags=["Quizzes"])
async def get_my_quiz_results_api(db: AsyncSession = Depends(get_db), current_user: DBUser = Depends(get_current_user)):
    return await catalog_service.list_user_quiz_results(db, current_user.id)

# --- Support ---
@app.post("/support", response_model=SupportMessageInDB, status_code=status.HTTP_201_CREATED, tags=["Support"])
async def create_support_message_api(message_in: SupportMessageCreate, db: AsyncSession = Depends(get_db), current_user: Optional[DBUser] = Depends(get_optional_user)):
    return await catalog_service.create_support_message(db, user_id=current_user.id if current_user else None, **message_in.model_dump())

@app.get("/admin/support", response_model=List[SupportMessageInDB], tags=["Admin", "Support"])
async def list_support_messages_api(status_filter: Optional[str] = Query(None, alias="status", pattern="^(pending|resolved)$"), db: AsyncSession = Depends(get_db), current_user: DBUser = Depends(require_role("admin"))):
    return await catalog_service.list_support_messages(db, status=status_filter)

@app.patch("/admin/support/{message_id}/resolve", response_model=SupportMessageInDB, tags=["Admin", "Support"])
async def resolve_support_message_api(message_id: str, db: AsyncSession = Depends(get_db), current_user: DBUser = Depends(require_role("admin"))):
    return await catalog_service.resolve_support_message(db, message_id)

# --- CSV Uploads ---
@app.post("/uploads", response_model=UploadInDB, status_code=status.HTTP_201_CREATED, tags=["Uploads"])
async def create_upload_api(upload_in: UploadCreate, db: AsyncSession = Depends(get_db), storage: LocalObjectStorage = Depends(get_storage), current_user: DBUser = Depends(get_current_user)):
    return await upload_service.create_upload(db, storage, current_user.id, UploadSubmission(**upload_in.model_dump()))

@app.post("/uploads/file", response_model=UploadInDB, status_code=status.HTTP_201_CREATED, tags=["Uploads"])
async def upload_csv_file_api(file: UploadFile = File(...), custom_filename: str = Form(...), db: AsyncSession = Depends(get_db), storage: LocalObjectStorage = Depends(get_storage), current_user: DBUser = Depends(get_current_user)):
    content = await file.read()
    parsed = parse_csv_content(content)
    metadata = {"contentType": file.content_type, "originalName": file.filename, "percentileColumns": parsed["percentile_columns"], "hasPercentileColumns": bool(parsed["percentile_columns"])}
    submission = UploadSubmission(filename=file.filename or "upload.csv", custom_filename=custom_filename, time_series_data=parsed["rows"],
                                  file_size=len(content), column_count=parsed["column_count"], row_count=parsed["row_count"], file_metadata=metadata)
    return await upload_service.create_upload(db, storage, current_user.id, submission, content=content)

@app.get("/uploads", response_model=List[UploadSummary], tags=["Uploads"])
async def get_my_uploads_api(db: AsyncSession = Depends(get_db), current_user: DBUser = Depends(get_current_user)):
    return await upload_service.list_user_uploads(db, current_user.id)

@app.get("/uploads/{upload_id}", response_model=UploadInDB, tags=["Uploads"])
async def get_upload_api(upload_id: str, db: AsyncSession = Depends(get_db), current_user: DBUser = Depends(get_current_user)):
    return await upload_service.get_owned_upload(db, upload_id, current_user)

@app.patch("/uploads/{upload_id}", response_model=UploadSummary, tags=["Uploads"])
async def update_upload_api(upload_id: str, body: UploadUpdate, db: AsyncSession = Depends(get_db), current_user: DBUser = Depends(get_current_user)):
    upload = await upload_service.get_owned_upload(db, upload_id, current_user, allow_admin=True)
    if body.custom_filename is not None: upload = await upload_service.rename_upload(db, upload, body.custom_filename)
    if body.status is not None: upload = await upload_service.set_upload_status(db, upload, body.status)
    return upload

@app.delete("/uploads/{upload_id}", tags=["Uploads"])
async def delete_upload_api(upload_id: str, db: AsyncSession = Depends(get_db), storage: LocalObjectStorage = Depends(get_storage), current_user: DBUser = Depends(get_current_user)):
    upload = await upload_service.get_owned_upload(db, upload_id, current_user)
    await upload_service.delete_upload(db, storage, upload)
    return {"message": "Upload deleted successfully"}

@app.get("/uploads/{upload_id}/download", tags=["Uploads"])
async def download_upload_api(upload_id: str, db: AsyncSession = Depends(get_db), storage: LocalObjectStorage = Depends(get_storage), current_user: DBUser = Depends(get_current_user)):
    upload = await upload_service.get_owned_upload(db, upload_id, current_user)
    content = await upload_service.read_upload_file(storage, upload)
    return Response(content=content, media_type="text/csv", headers={"Content-Disposition": f'attachment; filename="{upload.custom_filename}.csv"'})

# --- Anomalies ---
@app.post("/uploads/{upload_id}/anomalies", response_model=List[AnomalyInDB], status_code=status.HTTP_201_CREATED, tags=["Anomalies"])
async def record_anomalies_api(upload_id: str, anomalies_in: List[AnomalyCreate], db: AsyncSession = Depends(get_db), current_user: DBUser = Depends(get_current_user)):
    await upload_service.get_owned_upload(db, upload_id, current_user, allow_admin=True)
    return await upload_service.record_anomalies(db, upload_id, [a.model_dump() for a in anomalies_in])

@app.get("/uploads/{upload_id}/anomalies", response_model=List[AnomalyInDB], tags=["Anomalies"])
async def get_upload_anomalies_api(upload_id: str, db: AsyncSession = Depends(get_db), current_user: DBUser = Depends(get_current_user)):
    await upload_service.get_owned_upload(db, upload_id, current_user)
    return await upload_service.list_upload_anomalies(db, upload_id)

@app.get("/anomalies", response_model=List[UserAnomaly], tags=["Anomalies"])
async def get_my_anomalies_api(db: AsyncSession = Depends(get_db), current_user: DBUser = Depends(get_current_user)):
    rows = await upload_service.list_user_anomalies(db, current_user.id)
    return [UserAnomaly(**AnomalyInDB.model_validate(anomaly).model_dump(), upload_filename=upload.filename, upload_custom_filename=upload.custom_filename) for anomaly, upload in rows]

# --- Share Links ---
def _share_in_db(shared, upload: DBCsvUpload) -> ShareInDB:
    return ShareInDB(id=shared.id, share_token=shared.share_token, share_url=share_url(shared.share_token), title=shared.title, description=shared.description,
                     permissions=shared.permissions, expires_at=shared.expires_at, view_count=shared.view_count, created_at=shared.created_at, updated_at=shared.updated_at,
                     upload=SharedUploadRef(id=upload.id, filename=upload.filename, custom_filename=upload.custom_filename, uploaded_at=upload.uploaded_at))

@app.post("/uploads/{upload_id}/share", response_model=ShareCreated, status_code=status.HTTP_201_CREATED, tags=["Sharing"])
async def create_share_link_api(upload_id: str, share_in: ShareCreate, db: AsyncSession = Depends(get_db), current_user: DBUser = Depends(get_current_user)):
    shared = await share_service.create_share_link(db, upload_id, current_user.id, permissions=share_in.permissions, expiration_option=share_in.expiration_option,
                                                   title=share_in.title, description=share_in.description)
    return ShareCreated(id=shared.id, share_token=shared.share_token, share_url=share_url(shared.share_token), permissions=shared.permissions, expires_at=shared.expires_at, created_at=shared.created_at)

@app.get("/shares", response_model=List[ShareInDB], tags=["Sharing"])
async def get_my_shares_api(db: AsyncSession = Depends(get_db), current_user: DBUser = Depends(get_current_user)):
    return [_share_in_db(shared, upload) for shared, upload in await share_service.list_user_shares(db, current_user.id)]

@app.patch("/shares/{share_id}", response_model=ShareInDB, tags=["Sharing"])
async def update_share_link_api(share_id: str, body: ShareUpdate, db: AsyncSession = Depends(get_db), current_user: DBUser = Depends(get_current_user)):
    shared = await share_service.get_owned_share(db, share_id, current_user.id)
    shared = await share_service.update_share_link(db, shared, body.model_dump(exclude_unset=True))
    return _share_in_db(shared, await db.get(DBCsvUpload, shared.csv_upload_id))

@app.delete("/shares/{share_id}", tags=["Sharing"])
async def revoke_share_link_api(share_id: str, db: AsyncSession = Depends(get_db), current_user: DBUser = Depends(get_current_user)):
    shared = await share_service.get_owned_share(db, share_id, current_user.id)
    await share_service.revoke_share_link(db, shared)
    return {"message": "Shared result access revoked successfully"}

@app.get("/shares/{share_id}/access-logs", response_model=List[AccessLogInDB], tags=["Sharing"])
async def get_share_access_logs_api(share_id: str, db: AsyncSession = Depends(get_db), current_user: DBUser = Depends(get_current_user)):
    shared = await share_service.get_owned_share(db, share_id, current_user.id)
    return await share_service.list_access_logs(db, shared.id)

# --- Public shared results (token only, no auth) ---
@app.get("/shared/{share_token}", response_model=SharedResultView, tags=["Shared Results"])
async def view_shared_result_api(share_token: str, request: Request, db: AsyncSession = Depends(get_db)):
    grant = await share_service.resolve_share_link(db, share_token, request_context(request))
    shared = grant.shared
    return SharedResultView(id=shared.id, title=shared.title, description=shared.description, permissions=shared.permissions, can_download=grant.can_download,
                            view_count=shared.view_count, expires_at=shared.expires_at, shared_at=shared.created_at,
                            shared_by=SharedBy(first_name=grant.owner.first_name, last_name=grant.owner.last_name),
                            upload=SharedUploadView.model_validate(grant.upload), anomalies=[AnomalyInDB.model_validate(a) for a in grant.anomalies])

@app.get("/shared/{share_token}/download", response_class=StreamingResponse, tags=["Shared Results"])
async def download_shared_result_api(share_token: str, request: Request, db: AsyncSession = Depends(get_db)):
    grant = await share_service.resolve_share_link(db, share_token, request_context(request), action="download")
    grant.require_download()
    now = datetime.utcnow()
    content = anomaly_report.build_shared_report(grant, now=now)
    filename = anomaly_report.report_filename(grant, now=now)
    return StreamingResponse(BytesIO(content), media_type=anomaly_report.XLSX_MEDIA_TYPE,
                             headers={"Content-Disposition": f'attachment; filename="{filename}"'})
