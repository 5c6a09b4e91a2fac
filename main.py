import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from activity_store import ActivityFeed
from config import settings
from contact_store import ContactStore
from dashboard import DashboardAggregator
from database import db, ensure_indexes, serialize
from errors import CRMError, NotFoundError
from lead_store import LeadStore
from logging_config import setup_logging
from schemas import (
    ActivityIn,
    AddressIn,
    AdminUserUpdate,
    BatchSyncPayload,
    ChangePasswordPayload,
    ContactIn,
    ContactUpdate,
    LeadBulkUpdatePayload,
    LeadIn,
    LeadStatusPayload,
    LeadUpdate,
    LoginPayload,
    NotePayload,
    ProfileUpdate,
    RegisterPayload,
    TaskBulkStatusPayload,
    TaskIn,
    TaskUpdate,
)
from security import CredentialService, create_access_token, is_admin, require_admin
from task_store import TaskStore
from user_store import UserStore

setup_logging()
logger = logging.getLogger("crm")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        try:
            ensure_indexes(db)
        except PyMongoError:
            logger.exception("Could not ensure MongoDB indexes")
    yield


app = FastAPI(title="CRM API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "%s %s -> %s (%.1f ms)",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000,
    )
    return response


# ---------------------- ERRORS ----------------------

@app.exception_handler(CRMError)
async def crm_error_handler(request: Request, exc: CRMError):
    body: Dict[str, Any] = {"success": False, "message": exc.message}
    if exc.errors:
        body["errors"] = exc.errors
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")),
            "message": err.get("msg", "Invalid value"),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Validation failed", "errors": errors},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    body = {"success": False, "message": "Internal server error"}
    if not settings.is_production:
        body["error"] = str(exc)
    return JSONResponse(status_code=500, content=body)


# ---------------------- DEPENDENCIES ----------------------

def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return db


def get_users(database: Database = Depends(get_db)) -> UserStore:
    return UserStore(database)


def get_contacts(database: Database = Depends(get_db)) -> ContactStore:
    return ContactStore(database)


def get_leads(database: Database = Depends(get_db)) -> LeadStore:
    return LeadStore(database)


def get_tasks(database: Database = Depends(get_db)) -> TaskStore:
    return TaskStore(database)


def get_activities(database: Database = Depends(get_db)) -> ActivityFeed:
    if not settings.ACTIVITY_FEED_ENABLED:
        raise NotFoundError("Activity feed is disabled")
    return ActivityFeed(database)


def get_dashboard(database: Database = Depends(get_db)) -> DashboardAggregator:
    feed = ActivityFeed(database) if settings.ACTIVITY_FEED_ENABLED else None
    return DashboardAggregator(database, activities=feed)


def current_user(
    authorization: Optional[str] = Header(None),
    database: Database = Depends(get_db),
) -> Dict[str, Any]:
    return CredentialService(database).resolve(authorization)


def admin_user(user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
    return require_admin(user)


def _ok(data: Any = None, message: Optional[str] = None, **extra) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body


@app.get("/")
def read_root():
    return {"message": "CRM Backend running"}


@app.get("/test")
def test_database(database: Database = Depends(get_db)):
    response = {
        "backend": "running",
        "database": "connected",
        "database_name": database.name,
        "collections": [],
    }
    try:
        response["collections"] = database.list_collection_names()[:10]
    except PyMongoError as e:
        logger.warning("Database check failed: %s", e)
        response["database"] = "error"
    return response


# ---------------------- AUTH ----------------------

@app.post("/api/auth/register", status_code=201)
def auth_register(payload: RegisterPayload, users: UserStore = Depends(get_users)):
    profile = payload.model_dump(exclude={"password"}, exclude_none=True)
    user = users.register(profile, payload.password, allow_role_override=settings.ALLOW_ROLE_OVERRIDE)
    token = create_access_token(user["id"])
    return _ok({"token": token, "user": user}, "User registered successfully")


@app.post("/api/auth/login")
def auth_login(payload: LoginPayload, users: UserStore = Depends(get_users)):
    user, token = users.authenticate(payload.email, payload.password)
    return _ok({"token": token, "user": user}, "Login successful")


@app.post("/api/auth/logout")
def auth_logout(user: Dict[str, Any] = Depends(current_user)):
    # tokens are stateless; the client drops its copy
    logger.info("User %s logged out", user["_id"])
    return _ok(message="Logged out successfully")


@app.post("/api/auth/refresh-token")
def auth_refresh_token(user: Dict[str, Any] = Depends(current_user)):
    return _ok({"token": create_access_token(user["_id"])})


@app.get("/api/auth/profile")
def get_profile(user: Dict[str, Any] = Depends(current_user), users: UserStore = Depends(get_users)):
    return _ok(users.get_profile(user["_id"]))


@app.put("/api/auth/profile")
def update_profile(
    payload: ProfileUpdate,
    user: Dict[str, Any] = Depends(current_user),
    users: UserStore = Depends(get_users),
):
    updated = users.update_profile(user["_id"], payload.model_dump(exclude_unset=True))
    return _ok(updated, "Profile updated successfully")


@app.put("/api/auth/change-password")
def change_password(
    payload: ChangePasswordPayload,
    user: Dict[str, Any] = Depends(current_user),
    users: UserStore = Depends(get_users),
):
    users.change_password(user["_id"], payload.current_password, payload.new_password)
    return _ok(message="Password changed successfully")


@app.delete("/api/auth/delete-profile")
def delete_profile(user: Dict[str, Any] = Depends(current_user), users: UserStore = Depends(get_users)):
    users.delete_account(user["_id"])
    return _ok(message="Account deleted successfully")


@app.get("/api/auth/check-admin")
def check_admin(user: Dict[str, Any] = Depends(current_user)):
    return _ok({"is_admin": is_admin(user), "user": serialize(user)})


@app.put("/api/auth/update-last-sync")
def update_last_sync(user: Dict[str, Any] = Depends(current_user), users: UserStore = Depends(get_users)):
    updated = users.touch_last_sync(user["_id"])
    return _ok({"last_sync": updated["last_sync"]})


# Addresses
@app.get("/api/auth/addresses")
def list_addresses(user: Dict[str, Any] = Depends(current_user), users: UserStore = Depends(get_users)):
    return _ok(users.list_addresses(user["_id"]))


@app.post("/api/auth/addresses", status_code=201)
def add_address(
    payload: AddressIn,
    user: Dict[str, Any] = Depends(current_user),
    users: UserStore = Depends(get_users),
):
    addresses = users.add_address(user["_id"], payload.model_dump(exclude_none=True))
    return _ok(addresses, "Address added successfully")


@app.put("/api/auth/addresses/{address_id}/set-default")
def set_default_address(
    address_id: str,
    user: Dict[str, Any] = Depends(current_user),
    users: UserStore = Depends(get_users),
):
    return _ok(users.set_default_address(user["_id"], address_id), "Default address updated")


@app.put("/api/auth/addresses/{address_id}")
def update_address(
    address_id: str,
    payload: AddressIn,
    user: Dict[str, Any] = Depends(current_user),
    users: UserStore = Depends(get_users),
):
    addresses = users.update_address(user["_id"], address_id, payload.model_dump(exclude_unset=True))
    return _ok(addresses, "Address updated successfully")


@app.delete("/api/auth/addresses/{address_id}")
def delete_address(
    address_id: str,
    user: Dict[str, Any] = Depends(current_user),
    users: UserStore = Depends(get_users),
):
    return _ok(users.delete_address(user["_id"], address_id), "Address deleted successfully")


# Admin
@app.get("/api/auth/users")
def admin_list_users(admin: Dict[str, Any] = Depends(admin_user), users: UserStore = Depends(get_users)):
    items = users.list_users()
    return _ok(items, count=len(items))


@app.get("/api/auth/stats")
def admin_stats(admin: Dict[str, Any] = Depends(admin_user), users: UserStore = Depends(get_users)):
    return _ok(users.stats())


@app.get("/api/auth/users/{user_id}")
def admin_get_user(
    user_id: str,
    admin: Dict[str, Any] = Depends(admin_user),
    users: UserStore = Depends(get_users),
):
    return _ok(users.get_user(user_id))


@app.put("/api/auth/users/{user_id}")
def admin_update_user(
    user_id: str,
    payload: AdminUserUpdate,
    admin: Dict[str, Any] = Depends(admin_user),
    users: UserStore = Depends(get_users),
):
    updated = users.update_user(user_id, payload.model_dump(exclude_unset=True), caller_id=admin["_id"])
    return _ok(updated, "User updated successfully")


@app.delete("/api/auth/users/{user_id}")
def admin_delete_user(
    user_id: str,
    admin: Dict[str, Any] = Depends(admin_user),
    users: UserStore = Depends(get_users),
):
    users.delete_user(admin["_id"], user_id)
    return _ok(message="User deleted successfully")


@app.put("/api/auth/users/{user_id}/toggle-active")
def admin_toggle_active(
    user_id: str,
    admin: Dict[str, Any] = Depends(admin_user),
    users: UserStore = Depends(get_users),
):
    updated = users.toggle_active(admin["_id"], user_id)
    state = "activated" if updated["is_active"] else "deactivated"
    return _ok(updated, f"User {state} successfully")


# ---------------------- CONTACTS ----------------------

@app.get("/api/contacts")
def list_contacts(
    search: Optional[str] = Query(None),
    company: Optional[str] = Query(None),
    tag: Optional[str] = Query(None),
    is_favorite: Optional[bool] = Query(None),
    source: Optional[str] = Query(None),
    page: int = Query(1),
    limit: int = Query(20),
    sort: str = Query("-created_at"),
    user: Dict[str, Any] = Depends(current_user),
    contacts: ContactStore = Depends(get_contacts),
):
    result = contacts.list(
        user["_id"],
        search=search,
        company=company,
        tag=tag,
        is_favorite=is_favorite,
        source=source,
        page=page,
        limit=limit,
        sort=sort,
    )
    items = result.pop("items")
    return _ok(items, count=len(items), pagination=result)


@app.post("/api/contacts", status_code=201)
def create_contact(
    payload: ContactIn,
    user: Dict[str, Any] = Depends(current_user),
    contacts: ContactStore = Depends(get_contacts),
):
    return _ok(contacts.create(user["_id"], payload.model_dump(exclude_unset=True)), "Contact created successfully")


@app.get("/api/contacts/stats/count")
def contact_stats(user: Dict[str, Any] = Depends(current_user), contacts: ContactStore = Depends(get_contacts)):
    return _ok(contacts.stats(user["_id"]))


@app.get("/api/contacts/stats/tags")
def contact_tag_stats(user: Dict[str, Any] = Depends(current_user), contacts: ContactStore = Depends(get_contacts)):
    return _ok(contacts.tag_stats(user["_id"]))


@app.get("/api/contacts/companies")
def contact_companies(user: Dict[str, Any] = Depends(current_user), contacts: ContactStore = Depends(get_contacts)):
    return _ok(contacts.companies(user["_id"]))


@app.get("/api/contacts/tags")
def contact_tags(user: Dict[str, Any] = Depends(current_user), contacts: ContactStore = Depends(get_contacts)):
    return _ok(contacts.tags(user["_id"]))


@app.post("/api/contacts/batch")
def batch_sync_contacts(
    payload: BatchSyncPayload,
    user: Dict[str, Any] = Depends(current_user),
    contacts: ContactStore = Depends(get_contacts),
):
    result = contacts.batch_sync(user["_id"], payload.contacts)
    return _ok(result, "Batch sync completed")


@app.get("/api/contacts/{contact_id}")
def get_contact(
    contact_id: str,
    user: Dict[str, Any] = Depends(current_user),
    contacts: ContactStore = Depends(get_contacts),
):
    return _ok(contacts.get(user["_id"], contact_id))


@app.put("/api/contacts/{contact_id}")
def update_contact(
    contact_id: str,
    payload: ContactUpdate,
    user: Dict[str, Any] = Depends(current_user),
    contacts: ContactStore = Depends(get_contacts),
):
    updated = contacts.update(user["_id"], contact_id, payload.model_dump(exclude_unset=True))
    return _ok(updated, "Contact updated successfully")


@app.patch("/api/contacts/{contact_id}/favorite")
def toggle_favorite_contact(
    contact_id: str,
    user: Dict[str, Any] = Depends(current_user),
    contacts: ContactStore = Depends(get_contacts),
):
    updated = contacts.toggle_favorite(user["_id"], contact_id)
    state = "added to" if updated["is_favorite"] else "removed from"
    return _ok(updated, f"Contact {state} favorites")


@app.delete("/api/contacts/{contact_id}")
def delete_contact(
    contact_id: str,
    user: Dict[str, Any] = Depends(current_user),
    contacts: ContactStore = Depends(get_contacts),
):
    deleted_id = contacts.soft_delete(user["_id"], contact_id)
    return _ok({"id": deleted_id}, "Contact deleted successfully")


# ---------------------- LEADS ----------------------

@app.get("/api/leads")
def list_leads(
    status: Optional[str] = Query(None),
    source: Optional[str] = Query(None),
    priority: Optional[str] = Query(None),
    assigned_to: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    page: int = Query(1),
    limit: int = Query(10),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc"),
    user: Dict[str, Any] = Depends(current_user),
    leads: LeadStore = Depends(get_leads),
):
    result = leads.list(
        status=status,
        source=source,
        priority=priority,
        assigned_to=assigned_to,
        search=search,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return _ok(
        result["items"],
        pagination=result["pagination"],
        stats=result["stats"],
        filters=result["filters"],
    )


@app.post("/api/leads", status_code=201)
def create_lead(
    payload: LeadIn,
    user: Dict[str, Any] = Depends(current_user),
    leads: LeadStore = Depends(get_leads),
):
    return _ok(leads.create(user["_id"], payload.model_dump(exclude_unset=True)), "Lead created successfully")


@app.put("/api/leads/bulk-update")
def bulk_update_leads(
    payload: LeadBulkUpdatePayload,
    user: Dict[str, Any] = Depends(current_user),
    leads: LeadStore = Depends(get_leads),
):
    result = leads.bulk_update(payload.lead_ids, payload.update_fields)
    return _ok(result, f"{result['modified']} lead(s) updated successfully")


@app.get("/api/leads/assigned/me")
def my_assigned_leads(user: Dict[str, Any] = Depends(current_user), leads: LeadStore = Depends(get_leads)):
    items = leads.assigned_to(user["_id"])
    return _ok(items, count=len(items))


@app.get("/api/leads/summary/stats")
def lead_stats(user: Dict[str, Any] = Depends(current_user), leads: LeadStore = Depends(get_leads)):
    return _ok(leads.stats())


@app.get("/api/leads/{lead_id}")
def get_lead(lead_id: str, user: Dict[str, Any] = Depends(current_user), leads: LeadStore = Depends(get_leads)):
    return _ok(leads.get(lead_id))


@app.put("/api/leads/{lead_id}")
def update_lead(
    lead_id: str,
    payload: LeadUpdate,
    user: Dict[str, Any] = Depends(current_user),
    leads: LeadStore = Depends(get_leads),
):
    return _ok(leads.update(lead_id, payload.model_dump(exclude_unset=True)), "Lead updated successfully")


@app.delete("/api/leads/{lead_id}")
def delete_lead(lead_id: str, user: Dict[str, Any] = Depends(current_user), leads: LeadStore = Depends(get_leads)):
    leads.delete(lead_id)
    return _ok(message="Lead deleted successfully")


@app.post("/api/leads/{lead_id}/notes", status_code=201)
def add_lead_note(
    lead_id: str,
    payload: NotePayload,
    user: Dict[str, Any] = Depends(current_user),
    leads: LeadStore = Depends(get_leads),
):
    return _ok(leads.add_note(lead_id, payload.content, user["_id"]), "Note added successfully")


@app.patch("/api/leads/{lead_id}/status")
def update_lead_status(
    lead_id: str,
    payload: LeadStatusPayload,
    user: Dict[str, Any] = Depends(current_user),
    leads: LeadStore = Depends(get_leads),
):
    updated = leads.update_status(lead_id, payload.status, payload.note, user["_id"])
    return _ok(updated, "Lead status updated successfully")


# ---------------------- TASKS ----------------------

@app.get("/api/tasks")
def list_tasks(
    status: Optional[str] = Query(None),
    priority: Optional[str] = Query(None),
    contact_id: Optional[str] = Query(None),
    lead_id: Optional[str] = Query(None),
    limit: int = Query(20),
    user: Dict[str, Any] = Depends(current_user),
    tasks: TaskStore = Depends(get_tasks),
):
    items = tasks.list(
        user["_id"], status=status, priority=priority, contact_id=contact_id, lead_id=lead_id, limit=limit
    )
    return _ok(items, count=len(items))


@app.post("/api/tasks", status_code=201)
def create_task(
    payload: TaskIn,
    user: Dict[str, Any] = Depends(current_user),
    tasks: TaskStore = Depends(get_tasks),
):
    return _ok(tasks.create(user["_id"], payload.model_dump(exclude_unset=True)), "Task created successfully")


@app.patch("/api/tasks/bulk-status")
def bulk_task_status(
    payload: TaskBulkStatusPayload,
    user: Dict[str, Any] = Depends(current_user),
    tasks: TaskStore = Depends(get_tasks),
):
    modified = tasks.bulk_status_update(user["_id"], payload.task_ids, payload.status)
    return _ok({"modified_count": modified}, f"{modified} task(s) updated successfully")


@app.get("/api/tasks/analytics/today")
def tasks_today(user: Dict[str, Any] = Depends(current_user), tasks: TaskStore = Depends(get_tasks)):
    items = tasks.today(user["_id"])
    return _ok(items, count=len(items))


@app.get("/api/tasks/analytics/overdue")
def tasks_overdue(user: Dict[str, Any] = Depends(current_user), tasks: TaskStore = Depends(get_tasks)):
    items = tasks.overdue(user["_id"])
    return _ok(items, count=len(items))


@app.get("/api/tasks/analytics/upcoming")
def tasks_upcoming(user: Dict[str, Any] = Depends(current_user), tasks: TaskStore = Depends(get_tasks)):
    items = tasks.upcoming(user["_id"])
    return _ok(items, count=len(items))


@app.get("/api/tasks/analytics/stats")
def tasks_stats(user: Dict[str, Any] = Depends(current_user), tasks: TaskStore = Depends(get_tasks)):
    return _ok(tasks.stats(user["_id"]))


@app.get("/api/tasks/{task_id}")
def get_task(task_id: str, user: Dict[str, Any] = Depends(current_user), tasks: TaskStore = Depends(get_tasks)):
    return _ok(tasks.get(user["_id"], task_id))


@app.put("/api/tasks/{task_id}")
def update_task(
    task_id: str,
    payload: TaskUpdate,
    user: Dict[str, Any] = Depends(current_user),
    tasks: TaskStore = Depends(get_tasks),
):
    updated = tasks.update(user["_id"], task_id, payload.model_dump(exclude_unset=True))
    return _ok(updated, "Task updated successfully")


@app.delete("/api/tasks/{task_id}")
def delete_task(task_id: str, user: Dict[str, Any] = Depends(current_user), tasks: TaskStore = Depends(get_tasks)):
    tasks.delete(user["_id"], task_id)
    return _ok(message="Task deleted successfully")


# ---------------------- ACTIVITIES ----------------------

@app.get("/api/activities")
def list_activities(
    limit: int = Query(20, ge=1, le=100),
    skip: int = Query(0, ge=0),
    user: Dict[str, Any] = Depends(current_user),
    activities: ActivityFeed = Depends(get_activities),
):
    result = activities.list(user["_id"], limit=limit, skip=skip)
    return _ok(result["items"], total=result["total"])


@app.post("/api/activities", status_code=201)
def create_activity(
    payload: ActivityIn,
    user: Dict[str, Any] = Depends(current_user),
    activities: ActivityFeed = Depends(get_activities),
):
    return _ok(activities.create(user["_id"], payload.model_dump()), "Activity logged successfully")


# ---------------------- DASHBOARD ----------------------

@app.get("/api/dashboard/summary")
def dashboard_summary(
    user: Dict[str, Any] = Depends(current_user),
    dashboard: DashboardAggregator = Depends(get_dashboard),
):
    return _ok(dashboard.summary(user["_id"]))


@app.get("/api/dashboard/recent")
def dashboard_recent(
    limit: int = Query(5, ge=1, le=50),
    user: Dict[str, Any] = Depends(current_user),
    dashboard: DashboardAggregator = Depends(get_dashboard),
):
    return _ok(dashboard.recent(user["_id"], limit))


@app.get("/api/dashboard/timeline")
def dashboard_timeline(
    days: int = Query(30, ge=1, le=365),
    user: Dict[str, Any] = Depends(current_user),
    dashboard: DashboardAggregator = Depends(get_dashboard),
):
    return _ok(dashboard.timeline(user["_id"], days))


@app.get("/api/dashboard/metrics")
def dashboard_metrics(
    period: str = Query("month"),
    user: Dict[str, Any] = Depends(current_user),
    dashboard: DashboardAggregator = Depends(get_dashboard),
):
    return _ok(dashboard.metrics(user["_id"], period))


@app.get("/api/dashboard/quick-stats")
def dashboard_quick_stats(
    user: Dict[str, Any] = Depends(current_user),
    dashboard: DashboardAggregator = Depends(get_dashboard),
):
    return _ok(dashboard.quick_stats(user["_id"]))


@app.get("/api/dashboard/search")
def dashboard_search(
    q: Optional[str] = Query(None),
    user: Dict[str, Any] = Depends(current_user),
    dashboard: DashboardAggregator = Depends(get_dashboard),
):
    return _ok(dashboard.search(user["_id"], q))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
