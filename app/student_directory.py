import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

import pymongo
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from .errors import NotFoundError
from .models import (
    CompletedVsInProgress, Course, CourseProgress, CourseWithProgress, Dashboard, DetailedStats,
    RecentCourse, StudentContext, StudentPreferences, StudentProfile, StudentStats
)
from .utils import to_object_id

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"
RECENT_COURSES = 3


def format_time(minutes: int) -> str:
    hours, mins = divmod(minutes, 60)
    if hours == 0:
        return f"{mins}m"
    return f"{hours}h {mins}m"


def compute_study_streak(dates: Iterable[str], today: Optional[date] = None) -> int:
    """Consecutive days with activity, counting back from today (YYYY-MM-DD strings)"""
    active = set(dates)
    day = today or datetime.now(timezone.utc).date()
    streak = 0
    while day.isoformat() in active:
        streak += 1
        day -= timedelta(days=1)
    return streak


def to_course(doc: Dict[str, Any]) -> Course:
    return Course(
        id=str(doc["_id"]),
        title=doc.get("title", ""),
        description=doc.get("description", ""),
        thumbnail=doc.get("thumbnail"),
        totalLessons=doc.get("totalLessons", 0),
        category=doc.get("category", ""),
        tags=doc.get("tags") or [],
        durationMinutes=doc.get("durationMinutes", 0)
    )


def to_student_profile(doc: Dict[str, Any]) -> StudentProfile:
    return StudentProfile(
        id=str(doc["_id"]),
        name=doc.get("name", ""),
        email=doc.get("email"),
        avatar=doc.get("avatar"),
        preferences=StudentPreferences(**(doc.get("preferences") or {}))
    )


def detailed_stats_pipeline(student_oid: ObjectId) -> List[Dict[str, Any]]:
    """Per-student totals and time per course category in one pass over progresses"""
    return [
        {"$match": {"studentId": student_oid}},
        {"$lookup": {
            "from": "courses",
            "localField": "courseId",
            "foreignField": "_id",
            "as": "courseDoc"
        }},
        {"$unwind": {"path": "$courseDoc", "preserveNullAndEmptyArrays": True}},
        {"$facet": {
            "main": [
                {"$group": {
                    "_id": None,
                    "totalTimeMinutes": {"$sum": {"$ifNull": ["$timeSpentMinutes", 0]}},
                    "completed": {"$sum": {"$cond": [{"$eq": ["$progressPercentage", 100]}, 1, 0]}},
                    "inProgress": {"$sum": {"$cond": [
                        {"$and": [
                            {"$gt": ["$progressPercentage", 0]},
                            {"$lt": ["$progressPercentage", 100]}
                        ]},
                        1,
                        0
                    ]}},
                    "avgProgress": {"$avg": "$progressPercentage"},
                    "dates": {"$addToSet": {"$cond": [
                        {"$ne": ["$lastAccessedAt", None]},
                        {"$dateToString": {"format": "%Y-%m-%d", "date": "$lastAccessedAt"}},
                        None
                    ]}}
                }}
            ],
            "byCategory": [
                {"$group": {
                    "_id": {"$ifNull": ["$courseDoc.category", UNCATEGORIZED]},
                    "totalMinutes": {"$sum": {"$ifNull": ["$timeSpentMinutes", 0]}}
                }}
            ]
        }}
    ]


class StudentDirectory:
    """Student profiles, course progress and study statistics"""

    def __init__(self, db: Database):
        self.students = db["students"]
        self.progress = db["progresses"]
        self.courses = db["courses"]

    def get_student_context(self, student_id: str) -> Optional[StudentContext]:
        """Name, most recently accessed course and its progress, or None for unknown students"""
        if not ObjectId.is_valid(student_id):
            return None

        student_oid = ObjectId(student_id)
        student = self.students.find_one({"_id": student_oid}, {"name": 1})
        if not student:
            return None

        context = StudentContext(name=student.get("name", ""))

        latest = self.progress.find_one(
            {"studentId": student_oid},
            sort=[("lastAccessedAt", pymongo.DESCENDING)]
        )
        if latest:
            context.progress = latest.get("progressPercentage")
            course = self.courses.find_one({"_id": latest.get("courseId")}, {"title": 1})
            if course:
                context.currentCourse = course.get("title")

        return context

    def require_student(self, student_id: str) -> Dict[str, Any]:
        student = self.students.find_one({"_id": to_object_id(student_id, "Student")})
        if not student:
            raise NotFoundError(f"Student {student_id} not found")
        return student

    def get_dashboard(self, student_id: str) -> Dashboard:
        """Profile, course counters and the most recently accessed courses"""
        student = self.require_student(student_id)
        student_oid = student["_id"]

        records = list(self.progress.find({"studentId": student_oid}))
        total_time = sum(r.get("timeSpentMinutes") or 0 for r in records)
        stats = StudentStats(
            totalCourses=len(records),
            completedCourses=sum(1 for r in records if r.get("progressPercentage") == 100),
            inProgressCourses=sum(1 for r in records if 0 < (r.get("progressPercentage") or 0) < 100),
            totalTimeSpentMinutes=total_time,
            totalTimeSpentFormatted=format_time(total_time)
        )

        recent = list(
            self.progress.find({"studentId": student_oid})
            .sort("lastAccessedAt", pymongo.DESCENDING)
            .limit(RECENT_COURSES)
        )
        course_ids = [r.get("courseId") for r in recent]
        courses = {c["_id"]: to_course(c) for c in self.courses.find({"_id": {"$in": course_ids}})}

        return Dashboard(
            student=to_student_profile(student),
            stats=stats,
            recentCourses=[
                RecentCourse(
                    course=courses.get(r.get("courseId")),
                    progress=r.get("progressPercentage") or 0,
                    lastAccessed=r.get("lastAccessedAt")
                )
                for r in recent
            ]
        )

    def get_courses_with_progress(self, student_id: str) -> List[CourseWithProgress]:
        """Every course, with the student's progress where there is any"""
        student_oid = to_object_id(student_id, "Student")
        progress_by_course = {
            p.get("courseId"): p for p in self.progress.find({"studentId": student_oid})
        }

        results = []
        for doc in self.courses.find():
            record = progress_by_course.get(doc["_id"])
            progress = None
            if record:
                progress = CourseProgress(
                    completedLessons=record.get("completedLessons") or 0,
                    progressPercentage=record.get("progressPercentage") or 0,
                    lastAccessedAt=record.get("lastAccessedAt"),
                    timeSpentMinutes=record.get("timeSpentMinutes") or 0
                )
            results.append(CourseWithProgress(**to_course(doc).model_dump(), progress=progress))
        return results

    def get_detailed_stats(self, student_id: str, today: Optional[date] = None) -> DetailedStats:
        student = self.require_student(student_id)

        results = list(self.progress.aggregate(detailed_stats_pipeline(student["_id"])))
        facet = results[0] if results else {}
        main = (facet.get("main") or [{}])[0]

        dates = [d for d in main.get("dates") or [] if d]
        time_by_category = {
            row["_id"]: row["totalMinutes"] for row in facet.get("byCategory") or []
        }

        return DetailedStats(
            totalStudyHours=round((main.get("totalTimeMinutes") or 0) / 60, 2),
            completedVsInProgress=CompletedVsInProgress(
                completed=main.get("completed") or 0,
                inProgress=main.get("inProgress") or 0
            ),
            studyStreak=compute_study_streak(dates, today),
            weeklyAverageProgress=round(main.get("avgProgress") or 0, 2),
            timeByCategory=time_by_category
        )

    def update_preferences(self, student_id: str, preferences: StudentPreferences) -> StudentProfile:
        """Merge the given preference fields into the stored ones"""
        student_oid = to_object_id(student_id, "Student")
        changes = {
            f"preferences.{name}": value
            for name, value in preferences.model_dump(exclude_none=True).items()
        }

        if changes:
            student = self.students.find_one_and_update(
                {"_id": student_oid},
                {"$set": changes},
                return_document=ReturnDocument.AFTER
            )
        else:
            student = self.students.find_one({"_id": student_oid})

        if not student:
            raise NotFoundError(f"Student {student_id} not found")

        logger.info(f"Updated preferences for student {student_id}: {', '.join(changes) or 'no changes'}")
        return to_student_profile(student)
