"""
Tests for student profiles, progress and study statistics
"""
from datetime import date, datetime, timezone
from unittest.mock import MagicMock

import pymongo
import pytest
from bson import ObjectId
from pymongo import ReturnDocument
from pydantic import ValidationError

from app.errors import NotFoundError
from app.models import StudentPreferences, UpdatePreferencesRequest
from app.student_directory import StudentDirectory, compute_study_streak, format_time

STUDENT_ID = "507f1f77bcf86cd799439011"
COURSE_ID = ObjectId("507f1f77bcf86cd799439014")


class TestStudentDirectory:

    def setup_method(self):
        self.db = {
            "students": MagicMock(),
            "progresses": MagicMock(),
            "courses": MagicMock(),
        }
        self.directory = StudentDirectory(self.db)

    def test_full_context(self):
        self.db["students"].find_one.return_value = {"_id": ObjectId(STUDENT_ID), "name": "Ana"}
        self.db["progresses"].find_one.return_value = {"courseId": COURSE_ID, "progressPercentage": 65}
        self.db["courses"].find_one.return_value = {"_id": COURSE_ID, "title": "Computer Architecture"}

        context = self.directory.get_student_context(STUDENT_ID)

        assert context.name == "Ana"
        assert context.currentCourse == "Computer Architecture"
        assert context.progress == 65
        self.db["progresses"].find_one.assert_called_once_with(
            {"studentId": ObjectId(STUDENT_ID)},
            sort=[("lastAccessedAt", pymongo.DESCENDING)]
        )

    def test_no_progress(self):
        self.db["students"].find_one.return_value = {"name": "Ana"}
        self.db["progresses"].find_one.return_value = None

        context = self.directory.get_student_context(STUDENT_ID)

        assert context.name == "Ana"
        assert context.currentCourse is None
        assert context.progress is None
        self.db["courses"].find_one.assert_not_called()

    def test_unknown_student(self):
        self.db["students"].find_one.return_value = None

        assert self.directory.get_student_context(STUDENT_ID) is None

    def test_malformed_id(self):
        assert self.directory.get_student_context("not-an-id") is None
        self.db["students"].find_one.assert_not_called()


class TestHelpers:

    @pytest.mark.parametrize("minutes,expected", [(0, "0m"), (45, "45m"), (120, "2h 0m"), (565, "9h 25m")])
    def test_format_time(self, minutes, expected):
        assert format_time(minutes) == expected

    def test_streak_counts_back_from_today(self):
        dates = ["2024-03-10", "2024-03-09", "2024-03-07"]

        assert compute_study_streak(dates, today=date(2024, 3, 10)) == 2

    def test_streak_broken_today(self):
        assert compute_study_streak(["2024-03-09", "2024-03-08"], today=date(2024, 3, 10)) == 0

    def test_streak_without_activity(self):
        assert compute_study_streak([], today=date(2024, 3, 10)) == 0


class TestStudentProfiles:

    def setup_method(self):
        self.db = {
            "students": MagicMock(),
            "progresses": MagicMock(),
            "courses": MagicMock(),
        }
        self.directory = StudentDirectory(self.db)
        self.student = {
            "_id": ObjectId(STUDENT_ID),
            "name": "Ana",
            "email": "ana@example.com",
            "preferences": {"theme": "dark"},
        }
        self.course = {
            "_id": COURSE_ID,
            "title": "Computer Architecture",
            "description": "CPUs and memory",
            "totalLessons": 12,
            "category": "Hardware",
            "tags": ["cpu"],
        }

    def test_dashboard(self):
        accessed = datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc)
        records = [
            {"courseId": COURSE_ID, "progressPercentage": 100, "timeSpentMinutes": 300, "lastAccessedAt": accessed},
            {"courseId": ObjectId(), "progressPercentage": 50, "timeSpentMinutes": 200},
            {"courseId": ObjectId(), "progressPercentage": 0, "timeSpentMinutes": 65},
        ]
        recent_cursor = MagicMock()
        recent_cursor.sort.return_value.limit.return_value = [records[0]]
        self.db["students"].find_one.return_value = self.student
        self.db["progresses"].find.side_effect = [records, recent_cursor]
        self.db["courses"].find.return_value = [self.course]

        dashboard = self.directory.get_dashboard(STUDENT_ID)

        assert dashboard.student.name == "Ana"
        assert dashboard.student.preferences.theme == "dark"
        assert dashboard.stats.totalCourses == 3
        assert dashboard.stats.completedCourses == 1
        assert dashboard.stats.inProgressCourses == 1
        assert dashboard.stats.totalTimeSpentMinutes == 565
        assert dashboard.stats.totalTimeSpentFormatted == "9h 25m"
        assert len(dashboard.recentCourses) == 1
        assert dashboard.recentCourses[0].course.title == "Computer Architecture"
        assert dashboard.recentCourses[0].progress == 100
        assert dashboard.recentCourses[0].lastAccessed == accessed
        recent_cursor.sort.assert_called_once_with("lastAccessedAt", pymongo.DESCENDING)
        recent_cursor.sort.return_value.limit.assert_called_once_with(3)

    def test_dashboard_unknown_student(self):
        self.db["students"].find_one.return_value = None

        with pytest.raises(NotFoundError):
            self.directory.get_dashboard(STUDENT_ID)

    def test_dashboard_malformed_id(self):
        with pytest.raises(NotFoundError):
            self.directory.get_dashboard("nope")
        self.db["students"].find_one.assert_not_called()

    def test_courses_with_progress(self):
        other = {"_id": ObjectId(), "title": "Databases", "category": "Software"}
        self.db["courses"].find.return_value = [self.course, other]
        self.db["progresses"].find.return_value = [
            {"courseId": COURSE_ID, "completedLessons": 6, "progressPercentage": 50, "timeSpentMinutes": 90}
        ]

        courses = self.directory.get_courses_with_progress(STUDENT_ID)

        assert [c.title for c in courses] == ["Computer Architecture", "Databases"]
        assert courses[0].id == str(COURSE_ID)
        assert courses[0].progress.completedLessons == 6
        assert courses[0].progress.progressPercentage == 50
        assert courses[1].progress is None
        self.db["progresses"].find.assert_called_once_with({"studentId": ObjectId(STUDENT_ID)})

    def test_detailed_stats(self):
        self.db["students"].find_one.return_value = self.student
        self.db["progresses"].aggregate.return_value = [{
            "main": [{
                "totalTimeMinutes": 565,
                "completed": 1,
                "inProgress": 2,
                "avgProgress": 48.3333,
                "dates": ["2024-03-10", None, "2024-03-09"],
            }],
            "byCategory": [
                {"_id": "Hardware", "totalMinutes": 300},
                {"_id": "Uncategorized", "totalMinutes": 265},
            ],
        }]

        stats = self.directory.get_detailed_stats(STUDENT_ID, today=date(2024, 3, 10))

        assert stats.totalStudyHours == 9.42
        assert stats.completedVsInProgress.completed == 1
        assert stats.completedVsInProgress.inProgress == 2
        assert stats.studyStreak == 2
        assert stats.weeklyAverageProgress == 48.33
        assert stats.timeByCategory == {"Hardware": 300, "Uncategorized": 265}

        pipeline = self.db["progresses"].aggregate.call_args[0][0]
        assert pipeline[0] == {"$match": {"studentId": ObjectId(STUDENT_ID)}}
        assert pipeline[1]["$lookup"]["from"] == "courses"

    def test_detailed_stats_without_progress(self):
        self.db["students"].find_one.return_value = self.student
        self.db["progresses"].aggregate.return_value = [{"main": [], "byCategory": []}]

        stats = self.directory.get_detailed_stats(STUDENT_ID)

        assert stats.totalStudyHours == 0
        assert stats.studyStreak == 0
        assert stats.timeByCategory == {}

    def test_detailed_stats_unknown_student(self):
        self.db["students"].find_one.return_value = None

        with pytest.raises(NotFoundError):
            self.directory.get_detailed_stats(STUDENT_ID)
        self.db["progresses"].aggregate.assert_not_called()

    def test_update_preferences(self):
        updated = {**self.student, "preferences": {"theme": "light", "language": "en", "notifications": False}}
        self.db["students"].find_one_and_update.return_value = updated

        profile = self.directory.update_preferences(
            STUDENT_ID, StudentPreferences(theme="light", notifications=False)
        )

        assert profile.preferences.theme == "light"
        assert profile.preferences.language == "en"
        assert profile.preferences.notifications is False
        self.db["students"].find_one_and_update.assert_called_once_with(
            {"_id": ObjectId(STUDENT_ID)},
            {"$set": {"preferences.theme": "light", "preferences.notifications": False}},
            return_document=ReturnDocument.AFTER
        )

    def test_update_without_changes(self):
        self.db["students"].find_one.return_value = self.student

        profile = self.directory.update_preferences(STUDENT_ID, StudentPreferences())

        assert profile.preferences.theme == "dark"
        self.db["students"].find_one_and_update.assert_not_called()

    def test_update_unknown_student(self):
        self.db["students"].find_one_and_update.return_value = None

        with pytest.raises(NotFoundError):
            self.directory.update_preferences(STUDENT_ID, StudentPreferences(language="es"))


class TestUpdatePreferencesRequest:

    def test_accepts_valid_fields(self):
        request = UpdatePreferencesRequest(theme="dark", language="en", notifications=True)

        assert request.theme == "dark"

    def test_accepts_empty(self):
        assert UpdatePreferencesRequest().model_dump(exclude_none=True) == {}

    @pytest.mark.parametrize("payload", [
        {"theme": "blue"},
        {"notifications": "yes"},
        {"language": 5},
        {"fontSize": 14},
    ])
    def test_rejects_invalid(self, payload):
        with pytest.raises(ValidationError):
            UpdatePreferencesRequest(**payload)
