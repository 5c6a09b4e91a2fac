"""
Request schemas for the CRM API.

Each Pydantic model describes the JSON body one endpoint accepts. Shape and
types are checked here; business rules (uniqueness, date ordering, the
default-address invariant) are enforced by the stores.
"""

from pydantic import BaseModel, Field, EmailStr
from typing import Any, Dict, List, Optional, Literal
from datetime import datetime

Priority = Literal["low", "medium", "high", "urgent"]
LeadStatus = Literal["new", "contacted", "qualified", "proposal", "negotiation", "closed_won", "closed_lost"]
LeadSource = Literal["website", "referral", "social_media", "advertisement", "event", "other"]
ContactSource = Literal["website", "referral", "social", "event", "other"]
TaskStatus = Literal["pending", "in_progress", "completed", "cancelled"]

# Accounts

class AddressIn(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = Field(None, description="Defaults to India")
    zip_code: Optional[str] = None
    address_type: Optional[Literal["home", "work", "other"]] = None
    is_default: Optional[bool] = None

class RegisterPayload(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Login email, unique")
    password: str
    phone: Optional[str] = None
    role: Optional[Literal["user", "admin"]] = Field(None, description="Honored only when role override is enabled")
    addresses: Optional[List[AddressIn]] = None

class LoginPayload(BaseModel):
    email: EmailStr
    password: str

class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    profile_image: Optional[str] = None
    theme: Optional[Literal["light", "dark"]] = None
    newsletter_subscription: Optional[bool] = None

class ChangePasswordPayload(BaseModel):
    current_password: str
    new_password: str

class AdminUserUpdate(ProfileUpdate):
    role: Optional[Literal["user", "admin"]] = None
    is_active: Optional[bool] = None
    email_verified: Optional[bool] = None

# Contacts

class ContactAddress(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    zip_code: Optional[str] = None

class ContactUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = Field(None, description="Unique among the owner's live contacts")
    phone: Optional[str] = None
    company: Optional[str] = None
    job_title: Optional[str] = None
    tags: Optional[List[str]] = None
    notes: Optional[str] = Field(None, max_length=2000)
    address: Optional[ContactAddress] = None
    source: Optional[ContactSource] = None
    last_contacted: Optional[datetime] = None
    is_favorite: Optional[bool] = None

class ContactIn(ContactUpdate):
    first_name: str = Field(..., description="At least 2 characters")

class BatchSyncPayload(BaseModel):
    contacts: List[Any] = Field(..., description="Up to 100 contacts; items with an id are updated")

# Leads

class LeadUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    job_title: Optional[str] = None
    source: Optional[LeadSource] = None
    status: Optional[LeadStatus] = None
    priority: Optional[Priority] = None
    value: Optional[float] = Field(None, ge=0)
    budget: Optional[float] = Field(None, ge=0)
    assigned_to: Optional[str] = Field(None, description="User id")
    next_follow_up: Optional[datetime] = None
    custom_fields: Optional[Dict[str, Any]] = None

class LeadIn(LeadUpdate):
    first_name: str
    email: EmailStr = Field(..., description="Unique across all leads")

class LeadStatusPayload(BaseModel):
    status: LeadStatus
    note: Optional[str] = None

class NotePayload(BaseModel):
    content: str

class LeadBulkUpdatePayload(BaseModel):
    lead_ids: List[str]
    update_fields: Dict[str, Any] = Field(..., description="status, assigned_to, priority and source only")

# Tasks

class TaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[Priority] = None
    status: Optional[TaskStatus] = None
    due_date: Optional[datetime] = None
    reminder_date: Optional[datetime] = None
    contact_id: Optional[str] = None
    lead_id: Optional[str] = None

class TaskIn(BaseModel):
    title: str
    due_date: datetime = Field(..., description="Today or later")
    description: Optional[str] = None
    priority: Optional[Priority] = None
    reminder_date: Optional[datetime] = Field(None, description="Strictly before due_date")
    contact_id: Optional[str] = None
    lead_id: Optional[str] = None

class TaskBulkStatusPayload(BaseModel):
    task_ids: List[str]
    status: TaskStatus

# Activities

class ActivityIn(BaseModel):
    type: Literal["call", "meeting", "email", "note", "task", "other"]
    title: str
    description: Optional[str] = None
    date: Optional[datetime] = None
    duration: Optional[int] = Field(None, ge=0, description="Minutes")
    outcome: Optional[str] = None
    follow_up_date: Optional[datetime] = None
    is_completed: bool = False
    contact_id: Optional[str] = None
    lead_id: Optional[str] = None
