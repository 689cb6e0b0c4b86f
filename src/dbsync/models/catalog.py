"""
Tracked tables replicated between nodes.

The CRUD application owns these tables; they are declared here so every
replica node can be bootstrapped with an identical schema. Each carries the
replication bookkeeping columns from ReplicatedRow.
"""
from datetime import date, datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class ReplicatedRow(SQLModel):
    """Columns every tracked table needs for replication and conflict checks."""

    is_deleted: int = Field(default=0)  # soft-delete flag, never physically removed
    created_time: Optional[datetime] = None
    last_updated_time: Optional[datetime] = None
    sync_version: int = Field(default=1)  # bumped by the originating write path
    db_source: Optional[str] = None  # origin marker: node that last wrote the row


class SystemUser(ReplicatedRow, table=True):
    __tablename__ = "system_users"

    user_id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True)
    password: str
    real_name: Optional[str] = None
    role: str = "reader"
    email: Optional[str] = None
    phone: Optional[str] = None
    last_login: Optional[datetime] = None
    status: str = "active"


class Category(ReplicatedRow, table=True):
    __tablename__ = "categories"

    category_id: Optional[int] = Field(default=None, primary_key=True)
    category_name: str
    description: Optional[str] = None
    parent_id: Optional[int] = None
    sort_order: int = 0


class ReaderProfile(ReplicatedRow, table=True):
    __tablename__ = "reader_profiles"

    profile_id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    card_number: str
    gender: Optional[str] = None
    department: Optional[str] = None
    membership_type: str = "standard"
    register_date: date
    expire_date: date
    max_borrow: int = 5


class Book(ReplicatedRow, table=True):
    __tablename__ = "books"

    book_id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    author: Optional[str] = None
    isbn: str
    publisher: Optional[str] = None
    publish_date: Optional[date] = None
    category_id: int = 1
    location: Optional[str] = None
    status: str = "available"
    description: Optional[str] = None
    cover_image: Optional[str] = None


class BorrowRecord(ReplicatedRow, table=True):
    __tablename__ = "borrow_records"

    record_id: Optional[int] = Field(default=None, primary_key=True)
    reader_id: int = Field(index=True)
    book_id: int = Field(index=True)
    borrow_date: date
    due_date: date
    return_date: Optional[date] = None
    renew_count: int = 0
    status: str = "borrowed"
    fine_amount: float = 0.0
    operator_id: Optional[int] = None
