"""
Dashboard Aggregator.

Read-only summaries across leads, contacts, tasks and (optionally) the
activity feed. Independent reads are fanned out over a thread pool and
joined before returning; the first failing read fails the whole call.
"""

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import PyMongoError

from activity_store import ActivityFeed
from config import settings
from database import get_documents, serialize, to_object_id, utcnow
from errors import QueryTooShort, ValidationError, translate_storage_errors
from lead_store import CLOSED_STATUSES, conversion_rate

logger = logging.getLogger(__name__)

PERIOD_DAYS = {"day": 1, "week": 7, "month": 30, "year": 365}
OPEN_TASK_STATUSES = ["pending", "in_progress"]
SEARCH_LIMIT = 10
RECENT_ACTIVITIES = 10


def _rate(part: int, total: int) -> Any:
    """``part/total*100`` to two decimals, or 0 when there is nothing to divide."""
    return conversion_rate(part, total) if total else 0


class DashboardAggregator:
    def __init__(
        self,
        db: Database,
        activities: Optional[ActivityFeed] = None,
        max_workers: Optional[int] = None,
    ):
        self.leads = db["leads"]
        self.contacts = db["contacts"]
        self.tasks = db["tasks"]
        self.cache = db["dashboard_stats"]
        self.activities = activities
        self.max_workers = max(1, max_workers or settings.DASHBOARD_WORKERS)

    def _run_parallel(self, jobs: Dict[str, Callable[[], Any]]) -> Dict[str, Any]:
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(jobs))) as pool:
            futures = {name: pool.submit(job) for name, job in jobs.items()}
            return {name: future.result() for name, future in futures.items()}

    # ---------------------- scopes ----------------------

    @staticmethod
    def _leads_of(user_id, **extra) -> Dict[str, Any]:
        query = {"created_by": user_id}
        query.update(extra)
        return query

    @staticmethod
    def _contacts_of(user_id, **extra) -> Dict[str, Any]:
        query = {"owner_id": user_id, "deleted": False}
        query.update(extra)
        return query

    @staticmethod
    def _tasks_of(user_id, **extra) -> Dict[str, Any]:
        query = {"user_id": user_id}
        query.update(extra)
        return query

    def _group_leads(self, user_id, field: str) -> Dict[str, int]:
        rows = self.leads.aggregate(
            [
                {"$match": self._leads_of(user_id)},
                {"$group": {"_id": f"${field}", "count": {"$sum": 1}}},
            ]
        )
        return {str(row["_id"]): row["count"] for row in rows if row["_id"] is not None}

    def _count_jobs(self, user_id) -> Dict[str, Callable[[], Any]]:
        return {
            "total_leads": lambda: self.leads.count_documents(self._leads_of(user_id)),
            "active_leads": lambda: self.leads.count_documents(
                self._leads_of(user_id, status={"$nin": list(CLOSED_STATUSES)})
            ),
            "won_leads": lambda: self.leads.count_documents(self._leads_of(user_id, status="closed_won")),
            "total_contacts": lambda: self.contacts.count_documents(self._contacts_of(user_id)),
            "pending_tasks": lambda: self.tasks.count_documents(
                self._tasks_of(user_id, status={"$in": OPEN_TASK_STATUSES})
            ),
            "overdue_tasks": lambda: self.tasks.count_documents(
                self._tasks_of(user_id, status={"$in": OPEN_TASK_STATUSES}, due_date={"$lt": utcnow()})
            ),
            "lead_by_status": lambda: self._group_leads(user_id, "status"),
            "lead_by_source": lambda: self._group_leads(user_id, "source"),
        }

    # ---------------------- reads ----------------------

    @translate_storage_errors
    def summary(self, user_id: Any) -> Dict[str, Any]:
        user_id = to_object_id(user_id, "user ID")
        jobs = self._count_jobs(user_id)
        jobs["recent_activities"] = lambda: (
            self.activities.recent(user_id, RECENT_ACTIVITIES) if self.activities else []
        )
        results = self._run_parallel(jobs)

        counts = {
            key: results[key]
            for key in ("total_leads", "active_leads", "won_leads", "total_contacts", "pending_tasks", "overdue_tasks")
        }
        self._store_snapshot(user_id, counts, results)
        return {
            "summary": dict(counts, conversion_rate=_rate(counts["won_leads"], counts["total_leads"])),
            "recent_activities": results["recent_activities"],
            "lead_by_status": results["lead_by_status"],
            "lead_by_source": results["lead_by_source"],
        }

    def _store_snapshot(self, user_id, counts: Dict[str, int], results: Dict[str, Any]) -> None:
        snapshot = dict(
            counts,
            user_id=user_id,
            recent_activities=[to_object_id(a["id"]) for a in results["recent_activities"]],
            lead_by_status=results["lead_by_status"],
            lead_by_source=results["lead_by_source"],
            last_updated=utcnow(),
        )
        try:
            self.cache.update_one({"user_id": user_id}, {"$set": snapshot}, upsert=True)
        except PyMongoError:
            # the snapshot is a cache; the summary is already computed
            logger.exception("Failed to write dashboard snapshot for user %s", user_id)

    @translate_storage_errors
    def recent(self, user_id: Any, limit: int = 5) -> Dict[str, List[Dict[str, Any]]]:
        user_id = to_object_id(user_id, "user ID")
        newest = [("created_at", -1)]
        jobs = {
            "leads": lambda: get_documents(self.leads, self._leads_of(user_id), limit=limit, sort=newest),
            "tasks": lambda: get_documents(self.tasks, self._tasks_of(user_id), limit=limit, sort=newest),
            "contacts": lambda: get_documents(self.contacts, self._contacts_of(user_id), limit=limit, sort=newest),
        }
        results = {name: serialize(docs) for name, docs in self._run_parallel(jobs).items()}
        results["activities"] = self.activities.recent(user_id, limit) if self.activities else []
        return results

    @translate_storage_errors
    def timeline(self, user_id: Any, days: int = 30) -> Dict[str, Any]:
        if self.activities is None:
            return {"timeline": {}, "total_activities": 0, "message": "Activity feed not available"}
        start = utcnow() - timedelta(days=days)
        activities = self.activities.since(to_object_id(user_id, "user ID"), start)
        timeline: Dict[str, List[Dict[str, Any]]] = {}
        for activity in activities:
            day = activity["created_at"].date().isoformat()
            timeline.setdefault(day, []).append(activity)
        return {"timeline": timeline, "total_activities": len(activities)}

    @translate_storage_errors
    def metrics(self, user_id: Any, period: str = "month") -> Dict[str, Any]:
        if period not in PERIOD_DAYS:
            raise ValidationError(f"period must be one of: {', '.join(PERIOD_DAYS)}")
        user_id = to_object_id(user_id, "user ID")
        end = utcnow()
        start = end - timedelta(days=PERIOD_DAYS[period])
        window = {"created_at": {"$gte": start, "$lte": end}}
        day = {"$dateToString": {"format": "%Y-%m-%d", "date": "$created_at"}}

        lead_pipeline = [
            {"$match": self._leads_of(user_id, **window)},
            {
                "$group": {
                    "_id": day,
                    "total_leads": {"$sum": 1},
                    "won_leads": {"$sum": {"$cond": [{"$eq": ["$status", "closed_won"]}, 1, 0]}},
                    "total_value": {"$sum": {"$ifNull": ["$value", 0]}},
                }
            },
            {"$sort": {"_id": 1}},
        ]
        task_pipeline = [
            {"$match": self._tasks_of(user_id, **window)},
            {
                "$group": {
                    "_id": day,
                    "total_tasks": {"$sum": 1},
                    "completed_tasks": {"$sum": {"$cond": [{"$eq": ["$status", "completed"]}, 1, 0]}},
                }
            },
            {"$sort": {"_id": 1}},
        ]
        results = self._run_parallel(
            {
                "lead_metrics": lambda: list(self.leads.aggregate(lead_pipeline)),
                "task_metrics": lambda: list(self.tasks.aggregate(task_pipeline)),
            }
        )
        lead_metrics = [dict(row, date=row.pop("_id")) for row in results["lead_metrics"]]
        task_metrics = [dict(row, date=row.pop("_id")) for row in results["task_metrics"]]

        total_leads = sum(row["total_leads"] for row in lead_metrics)
        won_leads = sum(row["won_leads"] for row in lead_metrics)
        total_tasks = sum(row["total_tasks"] for row in task_metrics)
        completed_tasks = sum(row["completed_tasks"] for row in task_metrics)
        return {
            "period": period,
            "date_range": {"start_date": start, "end_date": end},
            "lead_metrics": lead_metrics,
            "task_metrics": task_metrics,
            "summary": {
                "total_leads_period": total_leads,
                "won_leads_period": won_leads,
                "conversion_rate_period": _rate(won_leads, total_leads),
                "total_tasks_period": total_tasks,
                "completed_tasks_period": completed_tasks,
                "completion_rate_period": _rate(completed_tasks, total_tasks),
            },
        }

    @translate_storage_errors
    def quick_stats(self, user_id: Any) -> Dict[str, Any]:
        user_id = to_object_id(user_id, "user ID")
        jobs = self._count_jobs(user_id)
        jobs["total_tasks"] = lambda: self.tasks.count_documents(self._tasks_of(user_id))
        jobs["completed_tasks"] = lambda: self.tasks.count_documents(self._tasks_of(user_id, status="completed"))
        results = self._run_parallel(jobs)

        results["conversion_rate"] = _rate(results["won_leads"], results["total_leads"])
        results["task_completion_rate"] = _rate(results.pop("completed_tasks"), results.pop("total_tasks"))
        results["last_updated"] = utcnow()
        return results

    @translate_storage_errors
    def search(self, user_id: Any, query: Optional[str]) -> Dict[str, Any]:
        query = (query or "").strip()
        if len(query) < 2:
            raise QueryTooShort()
        user_id = to_object_id(user_id, "user ID")
        pattern = {"$regex": re.escape(query), "$options": "i"}

        def matching(collection, scope, fields):
            criteria = dict(scope, **{"$or": [{field: pattern} for field in fields]})
            return serialize(get_documents(collection, criteria, limit=SEARCH_LIMIT))

        jobs = {
            "leads": lambda: matching(
                self.leads, self._leads_of(user_id), ("first_name", "last_name", "email", "company")
            ),
            "tasks": lambda: matching(self.tasks, self._tasks_of(user_id), ("title", "description")),
            "contacts": lambda: matching(
                self.contacts,
                self._contacts_of(user_id),
                ("first_name", "last_name", "email", "company", "job_title"),
            ),
        }
        if self.activities is not None:
            jobs["activities"] = lambda: self.activities.search(user_id, query, SEARCH_LIMIT)
        results = self._run_parallel(jobs)
        results.setdefault("activities", [])
        results["total_results"] = sum(len(items) for items in results.values())
        return results
