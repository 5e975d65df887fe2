"""Lending policy provider.

The "setting" collection holds a single record edited by administrators
elsewhere. The engine reads it once per operation and threads the resulting
immutable snapshot through the whole transition.
"""

import logging
from decimal import Decimal

from bson import Decimal128
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from errors import ConfigurationError

logger = logging.getLogger(__name__)

SETTING_COLLECTION = "setting"


class PolicySnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    approvals_required: bool
    loan_days: int = Field(..., ge=1)
    max_renewals: int = Field(..., ge=0)
    overdue_fee_per_day: Decimal = Field(..., ge=0)
    overdue_fee_cap_per_loan: Decimal = Field(..., ge=0)
    max_concurrent_loans: int = Field(..., ge=1)
    currency: str = "IDR"
    notifications_enabled: bool = True
    due_soon_days: int = 3

    @field_validator("overdue_fee_per_day", "overdue_fee_cap_per_loan", mode="before")
    @classmethod
    def _money(cls, v):
        # Mongo hands amounts back as floats or Decimal128
        if isinstance(v, float):
            return Decimal(str(v))
        if isinstance(v, Decimal128):
            return v.to_decimal()
        return v


class MongoPolicyProvider:
    """Reads the lending policy record; a missing record is fatal."""

    def __init__(self, db):
        self.db = db

    def current(self) -> PolicySnapshot:
        # A single-document read never observes a half-applied update.
        doc = self.db[SETTING_COLLECTION].find_one({})
        if doc is None:
            logger.error("No lending policy record found in '%s'", SETTING_COLLECTION)
            raise ConfigurationError("Lending policy is not configured")
        doc.pop("_id", None)
        try:
            return PolicySnapshot(**{k: v for k, v in doc.items() if k in PolicySnapshot.model_fields})
        except ValidationError as e:
            logger.error("Invalid lending policy record in '%s': %s", SETTING_COLLECTION, e)
            raise ConfigurationError("Lending policy record is invalid") from e
