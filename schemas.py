"""
Database Schemas for the School Administration backend

Each Pydantic model below maps to a MongoDB collection (class name lowercased).
Stored cross-references (class_id, staff_id, student_id, ...) are id strings.
"""

import re
from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

_EMAIL_RE = re.compile(r".+@.+\..+")

Gender = Literal["Male", "Female", "Other"]
UserRole = Literal["SuperAdmin", "Admin", "Staff"]
AttendanceStatus = Literal["Present", "Absent", "Late", "Excused", "Half Day"]


def _clean_email(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.strip().lower()
    if not _EMAIL_RE.fullmatch(v):
        raise ValueError("Please fill a valid email address")
    return v


# Files
class AttachmentRef(BaseModel):
    original_name: str
    stored_path: str = Field(..., description="Forward-slash path relative to the storage root")
    uploaded_at: datetime


# Staff
class StaffBase(BaseModel):
    staff_id: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[Literal["Staff", "Admin"]] = None
    designation: Optional[str] = None
    employment_status: Optional[str] = None
    experience_years: Optional[float] = Field(None, ge=0)
    salary: Optional[float] = Field(None, ge=0)
    previous_institution: Optional[str] = None
    date_of_joining: Optional[date] = None
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None
    mobile: Optional[str] = None
    aadhaar_number: Optional[str] = None
    emergency_contact: Optional[str] = None
    degree: Optional[str] = None
    major: Optional[str] = None
    account_name: Optional[str] = None
    account_number: Optional[str] = None
    ifsc: Optional[str] = None
    bank_name: Optional[str] = None
    branch: Optional[str] = None
    father_name: Optional[str] = None
    father_mobile: Optional[str] = None
    spouse_name: Optional[str] = None
    spouse_mobile: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pin: Optional[str] = None
    country: Optional[str] = None

    _email = field_validator("email")(_clean_email)


class Staff(StaffBase):
    staff_id: str
    full_name: str
    email: str
    role: Literal["Staff", "Admin"] = "Staff"
    gender: Gender = "Male"


# Students
class StudentBase(BaseModel):
    admission_no: Optional[str] = None
    roll_number: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None
    enrollment_status: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None
    mobile: Optional[str] = None
    aadhaar_number: Optional[str] = None
    birth_place: Optional[str] = None
    nationality: Optional[str] = None
    blood_group: Optional[str] = None
    caste: Optional[str] = None
    sub_caste: Optional[str] = None
    disability_allergy: Optional[str] = None
    father_name: Optional[str] = None
    father_mobile: Optional[str] = None
    father_occupation: Optional[str] = None
    father_annual_income: Optional[float] = Field(None, ge=0)
    mother_name: Optional[str] = None
    mother_mobile: Optional[str] = None
    mother_occupation: Optional[str] = None
    mother_annual_income: Optional[float] = Field(None, ge=0)
    guardian_name: Optional[str] = None
    guardian_mobile: Optional[str] = None
    alternate_mobile: Optional[str] = None
    current_street: Optional[str] = None
    current_city: Optional[str] = None
    current_state: Optional[str] = None
    current_pin: Optional[str] = None
    current_country: Optional[str] = None
    permanent_street: Optional[str] = None
    permanent_city: Optional[str] = None
    permanent_state: Optional[str] = None
    permanent_pin: Optional[str] = None
    permanent_country: Optional[str] = None
    class_id: Optional[str] = None
    section_id: Optional[str] = None

    _email = field_validator("email")(_clean_email)


class Student(StudentBase):
    admission_no: str
    full_name: str
    email: str
    enrollment_status: str = "Active"
    gender: Gender = "Male"
    nationality: str = "Indian"


class StudentAuth(BaseModel):
    username: str
    admission_no: str
    password_hash: str
    student_id: str


# Users (staff/admin logins)
class User(BaseModel):
    full_name: str
    email: str
    role: UserRole = "Staff"
    staff_ref: Optional[str] = Field(None, description="Staff id, staff code, staff identifier or email")

    _email = field_validator("email")(_clean_email)


class UserUpdate(BaseModel):
    full_name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[UserRole] = None
    password: Optional[str] = Field(None, min_length=6)
    staff_ref: Optional[str] = None

    _email = field_validator("email")(_clean_email)


# Academic structure
class SectionIn(BaseModel):
    name: str = Field(..., min_length=1)
    staff: Optional[str] = Field(None, description="Staff id, staff code, staff identifier or email")


class Classroom(BaseModel):
    class_name: str = Field(..., min_length=1)
    sections: List[SectionIn] = []


class ClassroomUpdate(BaseModel):
    class_name: Optional[str] = Field(None, min_length=1)
    sections: Optional[List[SectionIn]] = None


# Attendance
class AttendanceEntry(BaseModel):
    student_id: str
    status: AttendanceStatus = "Present"


class AttendanceMark(BaseModel):
    class_id: str
    section: str
    date: date
    records: List[AttendanceEntry]


class AttendanceUpdate(BaseModel):
    status: AttendanceStatus
