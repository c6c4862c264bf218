"""
Quotation Service

Quote arithmetic, an editing builder that keeps totals consistent after
every change, and persistence of customer drafts and project quotes.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Iterable, List, Optional, Union

from crm.models.quote import (
    Quote,
    QuoteItem,
    QuoteParty,
    QuoteProjectInfo,
    QuoteStatus,
    QuoteTotals,
)
from crm.models.records import CustomerProfile, Project, utc_now
from crm.utils.config import settings
from crm.utils.document_store import DocumentStore, join_path
from crm.utils.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def to_money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def line_total(item: QuoteItem) -> Decimal:
    """quantity * unit price, less the line's percentage discount"""
    return to_money(item.quantity * item.unit_price * (1 - item.discount_percent / HUNDRED))


def recompute_totals(
    items: Iterable[Union[QuoteItem, dict]],
    tax_rate_percent: Any,
    discount: Any = 0
) -> QuoteTotals:
    """
    Compute subtotal, tax and total for a list of line items.

    Pure and idempotent: the same inputs always produce identical Decimals.

    Args:
        items: Quote items (models or dicts)
        tax_rate_percent: Tax rate in percent applied to the subtotal
        discount: Flat amount taken off after tax

    Returns:
        QuoteTotals rounded half-up to cents
    """
    parsed = [i if isinstance(i, QuoteItem) else QuoteItem.model_validate(i) for i in items]
    subtotal = to_money(sum((line_total(i) for i in parsed), Decimal("0")))
    tax_amount = to_money(subtotal * Decimal(str(tax_rate_percent)) / HUNDRED)
    total = to_money(subtotal + tax_amount - Decimal(str(discount)))
    return QuoteTotals(subtotal=subtotal, tax_amount=tax_amount, total=total)


def generate_quote_number(now: datetime) -> str:
    """Date-time based quote number, e.g. 2026-10-191430"""
    return now.strftime("%Y-%m-%d%H%M")


class QuoteBuilder:
    """
    Edits a quote in memory.

    Every mutation re-derives line totals and quote totals, so the quote held
    by the builder is never stale. The quote number is fixed when the builder
    creates a new quote and does not change on later edits.
    """

    def __init__(
        self,
        quote: Optional[Quote] = None,
        customer: Optional[CustomerProfile] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.clock = clock
        if quote is None:
            now = clock()
            quote = Quote(
                quote_number=generate_quote_number(now),
                date=now.date().isoformat(),
                valid_until=(now + timedelta(days=settings.QUOTE_VALIDITY_DAYS)).date().isoformat(),
                tax_rate=Decimal(str(settings.DEFAULT_TAX_RATE)),
                created_at=now,
            )
            if customer is not None:
                quote.customer_id = customer.id
                quote.customer_info = QuoteParty(
                    id=customer.id,
                    name=customer.customer_profile.name,
                    email=customer.customer_profile.email,
                    phone=customer.customer_profile.phone,
                    company=customer.company_profile.company,
                )
        self.quote = quote.model_copy(deep=True)
        self._recompute()

    def _recompute(self):
        for item in self.quote.items:
            item.line_total = line_total(item)
        totals = recompute_totals(self.quote.items, self.quote.tax_rate, self.quote.discount)
        self.quote.subtotal = totals.subtotal
        self.quote.tax_amount = totals.tax_amount
        self.quote.total = totals.total

    def _find(self, item_id: int) -> int:
        for position, item in enumerate(self.quote.items):
            if item.id == item_id:
                return position
        raise NotFoundError(f"Quote item {item_id} not found")

    def add_item(
        self,
        description: str = "",
        quantity: Any = 1,
        unit_price: Any = 0,
        discount_percent: Any = 0,
        project_id: Optional[str] = None,
        customer_id: Optional[str] = None
    ) -> QuoteItem:
        item = QuoteItem(
            id=max((i.id for i in self.quote.items), default=0) + 1,
            description=description,
            quantity=quantity,
            unit_price=unit_price,
            discount_percent=discount_percent,
            project_id=project_id,
            customer_id=customer_id,
        )
        self.quote.items.append(item)
        self._recompute()
        return item

    def update_item(self, item_id: int, **fields) -> QuoteItem:
        position = self._find(item_id)
        current = self.quote.items[position]
        updated = QuoteItem.model_validate({**current.model_dump(), **fields, "id": current.id})
        self.quote.items[position] = updated
        self._recompute()
        return updated

    def remove_item(self, item_id: int):
        if len(self.quote.items) <= 1:
            raise ValidationError("A quote must keep at least one line item")
        del self.quote.items[self._find(item_id)]
        self._recompute()

    def set_tax_rate(self, rate: Any):
        rate = Decimal(str(rate))
        if rate < 0:
            raise ValidationError("Tax rate cannot be negative")
        self.quote.tax_rate = rate
        self._recompute()

    def set_discount(self, amount: Any):
        amount = Decimal(str(amount))
        if amount < 0:
            raise ValidationError("Discount cannot be negative")
        self.quote.discount = amount
        self._recompute()

    def add_customer(self, customer: QuoteParty):
        known = {c.id for c in self.quote.additional_customers} | {self.quote.customer_info.id}
        if customer.id and customer.id in known:
            return
        self.quote.additional_customers.append(customer)

    def add_project(self, project: Project, customer_id: Optional[str] = None) -> QuoteProjectInfo:
        """
        Associate a project with the quote under a customer.

        If the project has a budget, a fee line for it is added.

        Raises:
            ValidationError: If the project is already on the quote
        """
        included = {p.id for p in self.quote.additional_projects} | {self.quote.project_info.id}
        if project.id in included:
            raise ValidationError(f"Project {project.name} is already included in the quote")

        today = self.clock().date()
        customer_key = customer_id or self.quote.customer_info.id or "main"
        info = QuoteProjectInfo(
            id=project.id,
            name=project.name,
            description=project.description,
            start_date=today.isoformat(),
            estimated_end_date=project.end_date or (today + timedelta(days=90)).isoformat(),
            customer_id=customer_id or self.quote.customer_info.id,
        )
        self.quote.additional_projects.append(info)
        self.quote.customer_project_map.setdefault(customer_key, []).append(project.id)

        if project.budget:
            if customer_id:
                match = [c for c in self.quote.additional_customers if c.id == customer_id]
                customer_name = match[0].name if match else "Additional Customer"
            else:
                customer_name = self.quote.customer_info.name or "Main Customer"
            self.add_item(
                description=f"{project.name} - Project Fee ({customer_name})",
                quantity=1,
                unit_price=project.budget,
                project_id=project.id,
                customer_id=customer_key,
            )
        return info

    def build(self) -> Quote:
        return self.quote.model_copy(deep=True)


class QuotationService:
    """Persists customer draft quotes and project quotes."""

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    @staticmethod
    def drafts_collection(customer_id: str) -> str:
        return join_path("customerProfiles", customer_id, "quotesDrafts")

    @staticmethod
    def project_quotes_collection(project_id: str) -> str:
        return join_path("projects", project_id, "quotes")

    def _save(self, collection: str, quote: Quote) -> Quote:
        quote = QuoteBuilder(quote, clock=self.clock).build()
        data = quote.model_dump(mode="json", exclude={"id"})
        if quote.id:
            self.store.set(join_path(collection, quote.id), data)
        else:
            quote.id = self.store.add(collection, data)
        return quote

    def save_draft(self, customer_id: str, quote: Quote) -> Quote:
        """Store a quote as a draft under the customer, totals re-derived"""
        quote = quote.model_copy(update={"customer_id": customer_id, "status": QuoteStatus.DRAFT})
        saved = self._save(self.drafts_collection(customer_id), quote)
        logger.info(f"Saved draft quote {saved.quote_number} for customer {customer_id}")
        return saved

    def get_draft(self, customer_id: str, quote_id: str) -> Optional[Quote]:
        document = self.store.get(join_path(self.drafts_collection(customer_id), quote_id))
        return Quote.model_validate(document) if document else None

    def list_drafts(self, customer_id: str, include_migrated: bool = False) -> List[Quote]:
        """Drafts newest first; migrated drafts (carrying a project_id) are skipped by default"""
        documents = self.store.query(
            self.drafts_collection(customer_id), order_by="created_at", descending=True
        )
        quotes = [Quote.model_validate(d) for d in documents]
        if not include_migrated:
            quotes = [q for q in quotes if not q.project_id]
        return quotes

    def latest_draft(self, customer_id: str) -> Optional[Quote]:
        drafts = self.list_drafts(customer_id)
        return drafts[0] if drafts else None

    def delete_draft(self, customer_id: str, quote_id: str):
        self.store.delete(join_path(self.drafts_collection(customer_id), quote_id))

    def update_status(self, collection: str, quote_id: str, status: QuoteStatus):
        self.store.update(join_path(collection, quote_id), {"status": QuoteStatus(status).value})

    def project_quotes(self, project_id: str) -> List[Quote]:
        documents = self.store.query(
            self.project_quotes_collection(project_id), order_by="created_at", descending=True
        )
        return [Quote.model_validate(d) for d in documents]

    def save_project_quote(self, project_id: str, quote: Quote) -> Quote:
        return self._save(self.project_quotes_collection(project_id), quote.model_copy(update={"project_id": project_id}))
