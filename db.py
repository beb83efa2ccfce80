# db.py
import uuid
from datetime import datetime

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Float, JSON, Index, Text, Boolean, UniqueConstraint, event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker, declarative_base, relationship

import config


def utcnow() -> datetime:
    return datetime.utcnow()


def new_id() -> str:
    return str(uuid.uuid4())


def build_engine(url: str = config.DATABASE_URL, echo: bool = config.DB_ECHO, **engine_kwargs):
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": config.DB_TIMEOUT_SECONDS}
    async_engine = create_async_engine(url, echo=echo, connect_args=connect_args, **engine_kwargs)
    if url.startswith("sqlite"):
        # SQLite leaves FK checks off unless asked on every connection
        @event.listens_for(async_engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    return async_engine


def build_session_factory(async_engine):
    return sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False
    )


engine = build_engine()
SessionLocal = build_session_factory(engine)

Base = declarative_base()


class User(Base):
    __tablename__ = 'users'

    # Identity id issued by the external auth provider
    id = Column(String(128), primary_key=True)
    email = Column(String(255), unique=True, index=True, nullable=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    profile_image_url = Column(String(500), nullable=True)
    role = Column(String(20), index=True, nullable=False, default="user")  # 'user', 'admin'
    is_approved = Column(Boolean, index=True, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    enrollments = relationship('CourseEnrollment', back_populates='user')
    uploads = relationship('CsvUpload', back_populates='user')

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    def __repr__(self):
        return f"<User(id='{self.id}', email='{self.email}', role='{self.role}')>"


class Course(Base):
    __tablename__ = 'courses'

    id = Column(String(36), primary_key=True, default=new_id)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    level = Column(String(20), index=True, nullable=False)  # 'beginner', 'intermediate', 'advanced'
    price = Column(Integer, nullable=False)  # smallest currency unit
    rating = Column(Integer, nullable=False, default=0)
    category = Column(String(50), index=True, nullable=True)
    owner_id = Column(String(128), ForeignKey('users.id'), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    enrollments = relationship('CourseEnrollment', back_populates='course')
    quizzes = relationship('Quiz', back_populates='course')

    __table_args__ = (
        Index('idx_course_title', 'title'),
        Index('idx_course_created_at', 'created_at'),
    )

    def __repr__(self):
        return f"<Course(id='{self.id}', title='{self.title}')>"


class CourseEnrollment(Base):
    __tablename__ = 'course_enrollments'

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(128), ForeignKey('users.id'), nullable=False)
    course_id = Column(String(36), ForeignKey('courses.id'), nullable=False)
    progress = Column(Integer, nullable=False, default=0)  # 0-100
    completed = Column(Boolean, nullable=False, default=False)
    enrolled_at = Column(DateTime, default=utcnow, nullable=False)
    completion_date = Column(DateTime, nullable=True)
    last_accessed_at = Column(DateTime, nullable=True)

    user = relationship('User', back_populates='enrollments')
    course = relationship('Course', back_populates='enrollments')

    __table_args__ = (
        UniqueConstraint('user_id', 'course_id', name='uq_enrollment_user_course'),
        Index('idx_enrollment_course', 'course_id'),
    )

    def __repr__(self):
        return f"<CourseEnrollment(user_id='{self.user_id}', course_id='{self.course_id}', progress={self.progress})>"


class Quiz(Base):
    __tablename__ = 'quizzes'

    id = Column(String(36), primary_key=True, default=new_id)
    course_id = Column(String(36), ForeignKey('courses.id'), index=True, nullable=False)
    title = Column(String(200), nullable=False)
    questions = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    course = relationship('Course', back_populates='quizzes')
    results = relationship('QuizResult', back_populates='quiz')


class QuizResult(Base):
    __tablename__ = 'quiz_results'

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(128), ForeignKey('users.id'), nullable=False)
    quiz_id = Column(String(36), ForeignKey('quizzes.id'), nullable=False)
    score = Column(Integer, nullable=False)
    total_questions = Column(Integer, nullable=False)
    answers = Column(JSON, nullable=False)
    completed_at = Column(DateTime, default=utcnow, nullable=False)

    quiz = relationship('Quiz', back_populates='results')

    __table_args__ = (
        Index('idx_quiz_result_user', 'user_id'),
        Index('idx_quiz_result_quiz', 'quiz_id'),
    )


class SupportMessage(Base):
    __tablename__ = 'support_messages'

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(128), ForeignKey('users.id'), nullable=True)
    name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False)
    subject = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    status = Column(String(20), index=True, nullable=False, default="pending")  # 'pending', 'resolved'
    created_at = Column(DateTime, default=utcnow, nullable=False)


class CsvUpload(Base):
    __tablename__ = 'csv_uploads'

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(128), ForeignKey('users.id'), nullable=False)
    filename = Column(String(255), nullable=False)
    custom_filename = Column(String(255), nullable=False)
    storage_url = Column(String(1000), nullable=False)
    storage_path = Column(String(1000), nullable=False)  # needed to delete the artifact later
    file_size = Column(Integer, nullable=False)
    column_count = Column(Integer, nullable=False)
    row_count = Column(Integer, nullable=False)
    status = Column(String(20), index=True, nullable=False, default="uploaded")  # 'uploaded', 'processing', 'completed', 'error'
    file_metadata = Column(JSON, nullable=True)
    time_series_data = Column(JSON, nullable=False)
    uploaded_at = Column(DateTime, default=utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)

    user = relationship('User', back_populates='uploads')
    anomalies = relationship('Anomaly', back_populates='upload', passive_deletes=True)
    shared_results = relationship('SharedResult', back_populates='upload', passive_deletes=True)

    __table_args__ = (
        Index('idx_csv_upload_user', 'user_id'),
        Index('idx_csv_upload_uploaded_at', 'uploaded_at'),
    )

    def __repr__(self):
        return f"<CsvUpload(id='{self.id}', custom_filename='{self.custom_filename}', status='{self.status}')>"


class Anomaly(Base):
    __tablename__ = 'anomalies'

    id = Column(String(36), primary_key=True, default=new_id)
    upload_id = Column(String(36), ForeignKey('csv_uploads.id', ondelete="CASCADE"), nullable=False)
    anomaly_type = Column(String(50), index=True, nullable=False)  # e.g. 'p50_median_spike', 'p10_consecutive_low'
    detected_date = Column(String(50), index=True, nullable=False)
    week_before_value = Column(Float, nullable=True)
    p90_value = Column(Float, nullable=True)
    description = Column(Text, nullable=False)
    openai_analysis = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    upload = relationship('CsvUpload', back_populates='anomalies')

    __table_args__ = (
        Index('idx_anomaly_upload', 'upload_id'),
    )


class SharedResult(Base):
    __tablename__ = 'shared_results'

    id = Column(String(36), primary_key=True, default=new_id)
    csv_upload_id = Column(String(36), ForeignKey('csv_uploads.id', ondelete="CASCADE"), nullable=False)
    user_id = Column(String(128), ForeignKey('users.id'), nullable=False)
    share_token = Column(String(64), unique=True, index=True, nullable=False)
    permissions = Column(String(20), nullable=False, default="view_only")  # 'view_only', 'view_download'
    expires_at = Column(DateTime, index=True, nullable=True)  # NULL never expires
    view_count = Column(Integer, nullable=False, default=0)
    title = Column(String(200), nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    upload = relationship('CsvUpload', back_populates='shared_results')
    access_logs = relationship('ShareAccessLog', back_populates='shared_result', passive_deletes=True,
                               order_by='ShareAccessLog.accessed_at')

    __table_args__ = (
        Index('idx_shared_result_upload', 'csv_upload_id'),
        Index('idx_shared_result_user', 'user_id'),
    )

    def __repr__(self):
        return f"<SharedResult(id='{self.id}', permissions='{self.permissions}', view_count={self.view_count})>"


class ShareAccessLog(Base):
    __tablename__ = 'share_access_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    shared_result_id = Column(String(36), ForeignKey('shared_results.id', ondelete="CASCADE"), nullable=False)
    accessed_at = Column(DateTime, default=utcnow, nullable=False)
    action = Column(String(20), nullable=False, default="view")  # 'view', 'download'
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)

    shared_result = relationship('SharedResult', back_populates='access_logs')

    __table_args__ = (
        Index('idx_access_log_shared_result', 'shared_result_id', 'accessed_at'),
    )
