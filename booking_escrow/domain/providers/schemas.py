"""Provider domain schemas - Pydantic models for validation"""

from typing import Optional

from pydantic import BaseModel, field_validator


class BankDetailsUpdate(BaseModel):
    """Schema for a provider's payout bank account"""

    bank_code: str
    account_number: str
    account_name: str

    @field_validator("account_number")
    @classmethod
    def validate_account_number(cls, v):
        digits = v.replace(" ", "").replace("-", "")
        if not digits.isdigit() or not 6 <= len(digits) <= 20:
            raise ValueError("Account number must be 6-20 digits")
        return digits

    @field_validator("bank_code", "account_name")
    @classmethod
    def validate_required(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Field is required")
        return v


class ProviderPayoutDetailsResponse(BaseModel):
    """Bank details as shown back to the provider - account number masked"""

    provider_id: str
    bank_code: Optional[str] = None
    account_name: Optional[str] = None
    account_last4: Optional[str] = None
    has_bank_details: bool
    recipient_registered: bool
