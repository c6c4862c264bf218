"""
Quote Models - line-item quotations for customers and projects.

Monetary values are Decimals; totals are always derived from the items,
tax rate and discount and are never edited directly.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ConfigDict

from .records import utc_now


class QuoteStatus(str, Enum):
    """Status values for quotes."""
    DRAFT = "draft"
    SENT = "sent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class QuoteItem(BaseModel):
    """One line of a quote."""

    id: int = 1
    description: str = ""
    quantity: Decimal = Field(default=Decimal("1"), gt=0)
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)
    discount_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    line_total: Decimal = Decimal("0")
    project_id: Optional[str] = None
    customer_id: Optional[str] = None


class QuoteTotals(BaseModel):
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal


class QuoteParty(BaseModel):
    """Customer block printed on a quote."""

    id: Optional[str] = None
    name: str = ""
    email: str = ""
    phone: str = ""
    company: str = ""
    address: str = ""


class QuoteProjectInfo(BaseModel):
    """Project block printed on a quote."""

    id: Optional[str] = None
    name: str = ""
    description: str = ""
    start_date: Optional[str] = None
    estimated_end_date: Optional[str] = None
    customer_id: Optional[str] = None


class Quote(BaseModel):
    """Quote document (customer draft or project quote)."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    quote_number: str = ""
    date: Optional[str] = None
    valid_until: Optional[str] = None
    customer_info: QuoteParty = Field(default_factory=QuoteParty)
    project_info: QuoteProjectInfo = Field(default_factory=QuoteProjectInfo)
    items: List[QuoteItem] = Field(default_factory=lambda: [QuoteItem()], min_length=1)
    tax_rate: Decimal = Field(default=Decimal("7"), ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    subtotal: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    notes: str = ""
    terms: str = ""
    status: QuoteStatus = QuoteStatus.DRAFT
    additional_customers: List[QuoteParty] = Field(default_factory=list)
    additional_projects: List[QuoteProjectInfo] = Field(default_factory=list)
    customer_project_map: Dict[str, List[str]] = Field(default_factory=dict)
    customer_id: Optional[str] = None
    project_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
