from __future__ import annotations

import datetime as dt
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

RequestType = Literal["assignment_replacement", "quiz_replacement", "override_request", "extra_credit", "data_correction"]
OverrideType = Literal["qualified", "not_qualified"]
Decision = Literal["approved", "rejected"]


class LoginIn(BaseModel):
    username: str
    password: str


class PeriodIn(BaseModel):
    key: str
    name: str
    start_date: dt.date
    end_date: dt.date
    excluded_dates: list[dt.date] = Field(default_factory=list)


class PeriodOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    key: str
    name: str
    start_date: dt.date
    end_date: dt.date
    excluded_dates: list[dt.date]
    updated_at: Optional[dt.datetime] = None


class DayLogIn(BaseModel):
    day: int = Field(ge=1)
    date: dt.date
    minutes: int = Field(default=0, ge=0)
    topics: int = Field(default=0, ge=0)
    qualified: Optional[bool] = None
    reason: Optional[str] = None
    would_have_qualified: Optional[bool] = None


class StudentLogIn(BaseModel):
    student_id: str
    name: str = ""
    email: str = ""
    daily_log: list[DayLogIn] = Field(default_factory=list)


class DatasetIn(BaseModel):
    period: str
    section_number: str = "default"
    students: list[StudentLogIn] = Field(default_factory=list)


class RequestIn(BaseModel):
    student_id: str
    student_name: str
    student_email: str
    period: str
    section_number: str
    request_type: RequestType
    request_details: str
    day_number: Optional[int] = Field(default=None, ge=1)
    override_date: Optional[dt.date] = None


class RequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    student_id: str
    student_name: str
    student_email: str
    period: str
    section_number: str
    request_type: str
    request_details: str
    day_number: Optional[int] = None
    override_date: Optional[dt.date] = None
    status: str
    submitted_at: dt.datetime
    admin_notes: Optional[str] = None
    processed_at: Optional[dt.datetime] = None
    processed_by: Optional[str] = None


class ProcessRequestIn(BaseModel):
    status: Decision
    admin_notes: Optional[str] = None


class StudentBulkIn(BaseModel):
    student_id: str
    admin_notes: Optional[str] = None


class OverrideIn(BaseModel):
    student_id: str
    day_number: int = Field(ge=1)
    date: dt.date
    override_type: OverrideType
    reason: Optional[str] = None


class OverrideDeleteIn(BaseModel):
    student_id: str
    day_number: int = Field(ge=1)
    date: Optional[dt.date] = None


class AdjustmentIn(BaseModel):
    student_id: str
    student_name: str = ""
    period: Optional[str] = None
    section_number: Optional[str] = None
    amount: int
    reason: str


class BalancesIn(BaseModel):
    student_ids: list[str] = Field(min_length=1)


class SettingsIn(BaseModel):
    overrides_enabled: Optional[bool] = None
    redemption_requests_enabled: Optional[bool] = None


class RepairIn(BaseModel):
    reject_unfunded_redemptions: bool = False
    restore_missing_overrides: bool = False
    globalize_redemption_adjustments: bool = False
    deactivate_orphaned_adjustments: bool = False
