import asyncio
import logging
import math
from datetime import date, timedelta

from sqlalchemy import select, func

import catalog_service
import share_service
import upload_service
from db import SessionLocal, User, Course, CourseEnrollment, CsvUpload, Anomaly, SharedResult
from object_storage import object_storage
from upload_service import UploadSubmission

logger = logging.getLogger(__name__)

SAMPLE_USERS = [
    {"user_id": "sample-admin", "email": "maria.admin@example.com", "first_name": "Maria", "last_name": "Admin", "role": "admin"},
    {"user_id": "sample-analyst", "email": "anna.analyst@example.com", "first_name": "Anna", "last_name": "Analyst", "role": "user"},
    {"user_id": "sample-student", "email": "petr.student@example.com", "first_name": "Petr", "last_name": "Student", "role": "user"},
]

SAMPLE_COURSES = [
    {"title": "Python for Beginners: Automation and Scripting", "description": "Python basics, file handling and calling HTTP APIs.", "level": "beginner", "price": 0, "category": "Programming"},
    {"title": "Data Science: From Pandas to Neural Networks", "description": "Data analysis and machine learning on real datasets.", "level": "intermediate", "price": 4900, "category": "Analytics"},
    {"title": "Time Series Anomaly Detection", "description": "Percentile bands, week-over-week comparisons and alerting.", "level": "advanced", "price": 7900, "category": "Analytics"},
]

SAMPLE_QUIZ = [
    {"q": "What does print('Hello, ' + 'World!') output?", "options": ["HelloWorld", "Hello, World!", "Error"], "answer": "Hello, World!"},
    {"q": "What is the type of 3.14?", "options": ["int", "float", "str"], "answer": "float"},
]


def sample_time_series(days: int = 28):
    start = date.today() - timedelta(days=days)
    rows = []
    for i in range(days):
        base = 100 + 10 * math.sin(i / 3)
        value = base * (1.8 if i == days - 3 else 1.0)
        rows.append({"date": (start + timedelta(days=i)).isoformat(), "value": round(value, 2),
                     "p10": round(base * 0.85, 2), "p50": round(base, 2), "p90": round(base * 1.15, 2)})
    return rows


async def fill_with_sample_data():
    object_storage.ensure_root()
    async with SessionLocal() as db:
        logger.info("Creating sample users...")
        users = {}
        for data in SAMPLE_USERS:
            user = await catalog_service.upsert_user(db, data["user_id"], email=data["email"], first_name=data["first_name"], last_name=data["last_name"])
            user.role = data["role"]; user.is_approved = True
            users[data["user_id"]] = user
        await db.commit()
        admin, analyst, student = users["sample-admin"], users["sample-analyst"], users["sample-student"]

        logger.info("Creating sample courses and quizzes...")
        courses = [await catalog_service.create_course(db, owner_id=admin.id, **c) for c in SAMPLE_COURSES]
        quiz = await catalog_service.create_quiz(db, courses[0].id, "Python Basics Check", SAMPLE_QUIZ)
        enrollment = await catalog_service.enroll(db, student.id, courses[0].id)
        await catalog_service.update_progress(db, enrollment, 60)
        await catalog_service.enroll(db, analyst.id, courses[2].id)
        await catalog_service.submit_quiz_result(db, student.id, quiz.id, 1, len(SAMPLE_QUIZ), {"0": "Hello, World!", "1": "int"})
        await catalog_service.create_support_message(db, name="Petr Student", email="petr.student@example.com", subject="Certificate",
                                                     message="When will the certificate for the Python course be issued?", user_id=student.id)

        logger.info("Creating sample CSV upload with anomalies...")
        rows = sample_time_series()
        upload = await upload_service.create_upload(db, object_storage, analyst.id, UploadSubmission(
            filename="daily_signups.csv", custom_filename="Daily signups", time_series_data=rows,
            file_metadata={"percentileColumns": ["p10", "p50", "p90"], "hasPercentileColumns": True}))
        spike = rows[-3]
        await upload_service.record_anomalies(db, upload.id, [{
            "anomaly_type": "p90_exceeded", "detected_date": spike["date"], "week_before_value": rows[-10]["value"],
            "p90_value": spike["p90"], "description": f"Value {spike['value']} is above the p90 band ({spike['p90']})"}])
        await upload_service.set_upload_status(db, upload, "completed")
        shared = await share_service.create_share_link(db, upload.id, analyst.id, permissions="view_download", expiration_option="7d",
                                                       title="Signup spike", description="Spike detected three days ago")

        counts = {}
        for model in (User, Course, CourseEnrollment, CsvUpload, Anomaly, SharedResult):
            counts[model.__tablename__] = (await db.execute(select(func.count()).select_from(model))).scalar_one()

    logger.info("--- Database Populated --- %s", ", ".join(f"{k}: {v}" for k, v in counts.items()))
    logger.info("Sample share token: %s", shared.share_token)
    return shared.share_token


if __name__ == "__main__":
    import config
    from main import create_access_token
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(fill_with_sample_data())
    for data in SAMPLE_USERS:
        token = create_access_token({"sub": data["user_id"], "email": data["email"], "first_name": data["first_name"], "last_name": data["last_name"]})
        print(f"{data['email']} ({data['role']}): {token}")
