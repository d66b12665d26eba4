"""
Read-only aggregations over lessons and users.

Nothing is cached; every call reflects the current store state.
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional

from pymongo import DESCENDING
from pymongo.database import Database

from config import MOST_SAVED_LIMIT, TOP_CONTRIBUTORS_LIMIT
from database import COMMENTS, LESSONS, REPORTS, USERS, to_public
from schemas import AdminAnalytics, Contributor


def _local_midnight_utc(day: date) -> datetime:
    return datetime.combine(day, time()).astimezone().astimezone(timezone.utc).replace(tzinfo=None)


def start_of_week(now: Optional[datetime] = None) -> datetime:
    """Monday 00:00 local time of the current week, as naive UTC."""
    today = (now or datetime.now()).astimezone().date()
    return _local_midnight_utc(today - timedelta(days=today.weekday()))


def start_of_day(now: Optional[datetime] = None) -> datetime:
    return _local_midnight_utc((now or datetime.now()).astimezone().date())


def top_contributors(db: Database, limit: int = TOP_CONTRIBUTORS_LIMIT, since: Optional[datetime] = None) -> List[Contributor]:
    pipeline = [
        {"$match": {"createdAt": {"$gte": since or start_of_week()}}},
        {"$group": {"_id": "$email", "count": {"$sum": 1}}},
        {"$sort": {"count": -1, "_id": 1}},
        {"$limit": limit},
        {"$lookup": {"from": USERS, "localField": "_id", "foreignField": "email", "as": "user"}},
        {"$project": {"_id": 0, "email": "$_id", "count": 1, "user": 1}},
    ]
    rows = []
    for row in db[LESSONS].aggregate(pipeline):
        author = row["user"][0] if row.get("user") else {}
        rows.append(Contributor(email=row["email"], count=row["count"], name=author.get("name")))
    return rows


def most_saved_lessons(db: Database, limit: int = MOST_SAVED_LIMIT) -> list:
    cursor = (
        db[LESSONS]
        .find({"favoritesCount": {"$gt": 0}})
        .sort("favoritesCount", DESCENDING)
        .limit(limit)
    )
    return [to_public(d) for d in cursor]


def admin_summary(db: Database) -> AdminAnalytics:
    leaders = top_contributors(db, limit=1)
    return AdminAnalytics(
        totalUsers=db[USERS].count_documents({}),
        premiumUsers=db[USERS].count_documents({"role": "Premium"}),
        totalLessons=db[LESSONS].count_documents({}),
        publicLessons=db[LESSONS].count_documents({"privacy": "public"}),
        privateLessons=db[LESSONS].count_documents({"privacy": "private"}),
        lessonsToday=db[LESSONS].count_documents({"createdAt": {"$gte": start_of_day()}}),
        totalComments=db[COMMENTS].count_documents({}),
        totalReports=db[REPORTS].count_documents({}),
        topContributor=leaders[0] if leaders else None,
    )
