# catalog_service.py
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db import Course, CourseEnrollment, Quiz, QuizResult, SupportMessage, User, utcnow
from errors import NotFoundError, PermissionDeniedError, ReferentialError, ValidationError

logger = logging.getLogger(__name__)

COURSE_LEVELS = ("beginner", "intermediate", "advanced")


async def upsert_user(db: AsyncSession, user_id: str, email: Optional[str] = None, first_name: Optional[str] = None,
                      last_name: Optional[str] = None, profile_image_url: Optional[str] = None) -> User:
    """Creates the user on first sign-in, otherwise refreshes profile claims."""
    user = await db.get(User, user_id)
    if user is None:
        user = User(id=user_id, email=email, first_name=first_name, last_name=last_name,
                    profile_image_url=profile_image_url, role="user", is_approved=False)
        db.add(user)
        try:
            await db.commit()
        except IntegrityError:
            # a concurrent first sign-in of the same identity inserted the row
            await db.rollback()
            if await db.get(User, user_id) is None: raise
            return await upsert_user(db, user_id, email, first_name, last_name, profile_image_url)
        await db.refresh(user)
        logger.info("User %s created on first sign-in", user_id)
        return user
    changed = False
    for attr, value in (("email", email), ("first_name", first_name), ("last_name", last_name),
                        ("profile_image_url", profile_image_url)):
        if value is not None and getattr(user, attr) != value:
            setattr(user, attr, value); changed = True
    if changed:
        await db.commit(); await db.refresh(user)
    return user


async def set_user_approval(db: AsyncSession, user_id: str, is_approved: bool) -> User:
    user = await db.get(User, user_id)
    if user is None: raise NotFoundError("User", user_id)
    user.is_approved = is_approved
    await db.commit(); await db.refresh(user)
    return user


async def create_course(db: AsyncSession, title: str, description: str, level: str, price: int,
                        category: Optional[str] = None, owner_id: Optional[str] = None) -> Course:
    if level not in COURSE_LEVELS:
        raise ValidationError("level", level, "|".join(COURSE_LEVELS), message=f"Unknown course level '{level}'")
    if price < 0: raise ValidationError("price", price, ">= 0", message="Course price cannot be negative")
    if owner_id is not None and await db.get(User, owner_id) is None: raise ReferentialError("User", owner_id)
    course = Course(title=title, description=description, level=level, price=price, category=category, owner_id=owner_id)
    db.add(course); await db.commit(); await db.refresh(course)
    return course


async def list_courses(db: AsyncSession, level: Optional[str] = None, skip: int = 0, limit: int = 20) -> List[Course]:
    stmt = select(Course)
    if level: stmt = stmt.where(Course.level == level)
    result = await db.execute(stmt.order_by(desc(Course.created_at)).offset(skip).limit(limit))
    return list(result.scalars().all())


async def get_course(db: AsyncSession, course_id: str) -> Course:
    course = await db.get(Course, course_id)
    if course is None: raise NotFoundError("Course", course_id)
    return course


async def enroll(db: AsyncSession, user_id: str, course_id: str, now: Optional[datetime] = None) -> CourseEnrollment:
    """One enrollment per user and course; enrolling again returns the existing row."""
    if await db.get(User, user_id) is None: raise ReferentialError("User", user_id)
    if await db.get(Course, course_id) is None: raise ReferentialError("Course", course_id)
    stmt = select(CourseEnrollment).where(CourseEnrollment.user_id == user_id, CourseEnrollment.course_id == course_id)
    existing = (await db.execute(stmt)).scalar_one_or_none()
    if existing: return existing
    now = now or utcnow()
    enrollment = CourseEnrollment(user_id=user_id, course_id=course_id, progress=0, completed=False,
                                  enrolled_at=now, last_accessed_at=now)
    db.add(enrollment)
    try:
        await db.commit()
    except IntegrityError:
        # a concurrent request enrolled first
        await db.rollback()
        return (await db.execute(stmt)).scalar_one()
    await db.refresh(enrollment)
    logger.info("User %s enrolled in course %s", user_id, course_id)
    return enrollment


async def get_owned_enrollment(db: AsyncSession, enrollment_id: str, user_id: str) -> CourseEnrollment:
    enrollment = await db.get(CourseEnrollment, enrollment_id)
    if enrollment is None: raise NotFoundError("CourseEnrollment", enrollment_id)
    if enrollment.user_id != user_id: raise PermissionDeniedError("Access denied. You can only update your own enrollments.")
    return enrollment


async def update_progress(db: AsyncSession, enrollment: CourseEnrollment, progress: int,
                          now: Optional[datetime] = None) -> CourseEnrollment:
    if not 0 <= progress <= 100:
        raise ValidationError("progress", progress, "0-100", message="Progress must be between 0 and 100")
    now = now or utcnow()
    enrollment.progress = progress
    enrollment.last_accessed_at = now
    if progress == 100 and not enrollment.completed:
        enrollment.completed = True
        enrollment.completion_date = now
    await db.commit(); await db.refresh(enrollment)
    return enrollment


async def list_user_enrollments(db: AsyncSession, user_id: str) -> List[CourseEnrollment]:
    result = await db.execute(select(CourseEnrollment).where(CourseEnrollment.user_id == user_id)
                              .order_by(desc(CourseEnrollment.enrolled_at)))
    return list(result.scalars().all())


async def create_quiz(db: AsyncSession, course_id: str, title: str, questions: List[Dict[str, Any]]) -> Quiz:
    if await db.get(Course, course_id) is None: raise ReferentialError("Course", course_id)
    quiz = Quiz(course_id=course_id, title=title, questions=questions)
    db.add(quiz); await db.commit(); await db.refresh(quiz)
    return quiz


async def list_course_quizzes(db: AsyncSession, course_id: str) -> List[Quiz]:
    result = await db.execute(select(Quiz).where(Quiz.course_id == course_id).order_by(Quiz.created_at))
    return list(result.scalars().all())


async def submit_quiz_result(db: AsyncSession, user_id: str, quiz_id: str, score: int, total_questions: int,
                             answers: Any) -> QuizResult:
    if total_questions < 1:
        raise ValidationError("totalQuestions", total_questions, ">= 1", message="A quiz result needs at least one question")
    if not 0 <= score <= total_questions:
        raise ValidationError("score", score, f"0-{total_questions}", message="Score must be between 0 and the number of questions")
    if await db.get(User, user_id) is None: raise ReferentialError("User", user_id)
    if await db.get(Quiz, quiz_id) is None: raise ReferentialError("Quiz", quiz_id)
    result = QuizResult(user_id=user_id, quiz_id=quiz_id, score=score, total_questions=total_questions, answers=answers)
    db.add(result); await db.commit(); await db.refresh(result)
    return result


async def list_user_quiz_results(db: AsyncSession, user_id: str) -> List[QuizResult]:
    result = await db.execute(select(QuizResult).where(QuizResult.user_id == user_id).order_by(desc(QuizResult.completed_at)))
    return list(result.scalars().all())


async def create_support_message(db: AsyncSession, name: str, email: str, subject: str, message: str,
                                 user_id: Optional[str] = None) -> SupportMessage:
    if user_id is not None and await db.get(User, user_id) is None: raise ReferentialError("User", user_id)
    support_message = SupportMessage(user_id=user_id, name=name, email=email, subject=subject, message=message, status="pending")
    db.add(support_message); await db.commit(); await db.refresh(support_message)
    logger.info("Support message %s received", support_message.id)
    return support_message


async def list_support_messages(db: AsyncSession, status: Optional[str] = None) -> List[SupportMessage]:
    stmt = select(SupportMessage)
    if status: stmt = stmt.where(SupportMessage.status == status)
    return list((await db.execute(stmt.order_by(desc(SupportMessage.created_at)))).scalars().all())


async def resolve_support_message(db: AsyncSession, message_id: str) -> SupportMessage:
    support_message = await db.get(SupportMessage, message_id)
    if support_message is None: raise NotFoundError("SupportMessage", message_id)
    support_message.status = "resolved"
    await db.commit(); await db.refresh(support_message)
    return support_message
