"""
Pydantic schemas for API requests
"""

from typing import Optional
from pydantic import BaseModel, Field


# Loan schemas
class LoanRequestModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    total_installments: int = Field(..., ge=1)
    lender_type: str = Field("business", description="personal or business")
    repayment_frequency: str = Field("monthly", description="weekly, biweekly or monthly")
    currency: str = "USD"
    interest_rate: Optional[str] = None  # Annual percent as string
    interest_type: str = "simple"
    invited_lender_id: Optional[str] = None
    purpose: Optional[str] = None


# Matching schemas
class CreateOffersRequest(BaseModel):
    loan_id: str


class OfferResponseRequest(BaseModel):
    action: str = Field(..., description="accept or decline")
    reason: Optional[str] = None


# Webhook schemas
class TransferEvent(BaseModel):
    event: str = Field(..., description="transfer_succeeded or transfer_failed")
    payment_id: str
    loan_id: str
    borrower_id: str
    amount: Optional[str] = None
    schedule_entry_id: Optional[str] = None
    due_date: Optional[str] = None  # ISO date
    paid_date: Optional[str] = None  # ISO date or datetime
    reason: Optional[str] = None


# Borrower schemas
class CreateBorrowerRequest(BaseModel):
    user_id: str
    full_name: Optional[str] = None
    created_at: Optional[str] = None  # ISO datetime of account creation
    kyc_verified: bool = False
    selfie_verified: bool = False
    phone_verified: bool = False
    bank_connected: bool = False


# Lender schemas
class LenderPreferenceRequest(BaseModel):
    business_id: Optional[str] = Field(None, description="Set when lending as a business")
    min_amount: str = "0"
    max_amount: str
    capital_pool: str = "0"
    allow_first_time_borrowers: bool = True
    first_time_borrower_limit: Optional[str] = None
    interest_rate: Optional[str] = None
    interest_type: str = "simple"
    is_active: bool = True


class DepositRequest(BaseModel):
    amount: str


class TierPolicyRequest(BaseModel):
    tier_id: str = Field(..., description="tier_1 .. tier_4")
    interest_rate: str
    max_loan_amount: Optional[str] = None


# Vouch schemas
class CreateVouchRequest(BaseModel):
    vouchee_id: str
    vouch_type: str = "character"
    relationship: str = ""
    known_years: int = Field(0, ge=0)
