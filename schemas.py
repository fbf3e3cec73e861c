"""
Database Schemas

Loan sync domain schemas using Pydantic models.
Each record class maps to one MongoDB collection and is keyed by the
client-assigned ``id`` field.

Examples:
- User -> "users"
- Loan -> "loans"
- Notification -> "notifications"
- System -> "system" (single document, key="main")

Attributes are snake_case in Python and camelCase on the wire and in the
store, e.g. ``full_name`` <-> ``fullName``.
"""
from __future__ import annotations
import time
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


DEFAULT_BUDGET = 30000000
DEFAULT_RANK_PROFIT = 0
SYSTEM_KEY = "main"
MAX_INT64 = 2 ** 63 - 1  # largest integer BSON can store


def now_ms() -> int:
    return int(time.time() * 1000)


class Record(BaseModel):
    """Base for client-synced records"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore",
                              allow_inf_nan=False)

    id: str

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class User(Record):
    """Borrowers and admins
    Collection: users
    """
    phone: str
    full_name: str
    id_number: str
    balance: float = 0
    total_limit: float = 0
    rank: str = "standard"
    rank_progress: float = 0
    pending_upgrade_rank: Optional[str] = None
    rank_upgrade_bill: Optional[str] = None  # image, data URL
    is_logged_in: bool = False
    is_admin: bool = False
    address: Optional[str] = None
    join_date: Optional[str] = None
    id_front: Optional[str] = None
    id_back: Optional[str] = None
    ref_zalo: Optional[str] = None
    relationship: Optional[str] = None
    last_loan_seq: Optional[int] = Field(None, ge=0, le=MAX_INT64)
    bank_name: Optional[str] = None
    bank_account_number: Optional[str] = None
    bank_account_holder: Optional[str] = None
    updated_at: int = Field(default_factory=now_ms, ge=0, le=MAX_INT64, description="Epoch milliseconds")


class Loan(Record):
    """Loan requests and their lifecycle, owned by the client
    Collection: loans
    """
    user_id: str
    user_name: str
    amount: float
    date: str
    created_at: str
    status: str  # pending / approved / rejected / repaid ...
    fine: float = 0
    bill_image: Optional[str] = None
    signature: Optional[str] = None
    rejection_reason: Optional[str] = None
    updated_at: int = Field(default_factory=now_ms, ge=0, le=MAX_INT64, description="Epoch milliseconds")


class Notification(Record):
    """Messages addressed to a user
    Collection: notifications
    """
    user_id: str
    title: str
    message: str
    time: str
    read: bool = False
    type: str


class System(BaseModel):
    """Global settings (single document, key="main")
    Collection: system
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, allow_inf_nan=False)

    key: str = SYSTEM_KEY
    budget: float = DEFAULT_BUDGET
    rank_profit: float = DEFAULT_RANK_PROFIT


# Settings request bodies

class BudgetUpdate(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    budget: float


class RankProfitUpdate(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, allow_inf_nan=False)

    rank_profit: float
