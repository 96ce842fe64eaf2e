"""
Contract text rendering.

Builds the four content sections of a service agreement (header, work
items, terms, footer) from an estimate snapshot.  Pure string formatting;
the contract service persists the result and freezes it on signing.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Mapping, Sequence

from quote_kernel.db.types import HUNDRED, ZERO, round_money, to_decimal
from quote_kernel.exceptions import ValidationError

CONTRACT_NUMBER_PLACEHOLDER = "{{contractNumber}}"

DEFAULT_TERMS = """\
TERMS AND CONDITIONS

1. SCOPE OF WORK
The Contractor agrees to perform the work as described above at the property address listed.

2. PAYMENT TERMS
Payment is due according to the payment plan selected at the time of estimate approval. All work will be performed after receipt of any required deposit.

3. WORK SCHEDULE
Work will be scheduled based on weather conditions and crew availability. The Contractor will provide reasonable notice of the scheduled work date.

4. PROPERTY ACCESS
The Customer agrees to provide access to the property for the performance of work. The Customer is responsible for identifying any underground utilities, irrigation systems, or other obstructions.

5. CLEANUP
All debris generated from the work will be removed from the property unless otherwise specified.

6. WARRANTY
Work is guaranteed for a period of 30 days from completion. This warranty covers workmanship only and does not cover acts of nature or subsequent damage.

7. LIABILITY
The Contractor maintains liability insurance and workers' compensation coverage. The Customer is responsible for any pre-existing damage to property.

8. CANCELLATION
Cancellation requests must be made at least 48 hours before the scheduled work date. Deposits are non-refundable if cancellation is made less than 48 hours before scheduled work.

9. DISPUTES
Any disputes arising from this agreement shall be resolved through mediation before pursuing legal action.

10. ENTIRE AGREEMENT
This contract represents the entire agreement between the parties and supersedes any prior verbal or written agreements."""


@dataclass(frozen=True)
class ContractParties:
    """Customer and company details supplied by the CRM layer."""

    company_name: str
    customer_name: str
    customer_phone: str | None = None
    customer_email: str | None = None
    property_address: str | None = None


@dataclass(frozen=True)
class ContractTemplate:
    """Tenant overrides; empty sections fall back to the defaults."""

    header: str | None = None
    terms: str | None = None
    footer: str | None = None


@dataclass(frozen=True)
class ContractContent:
    header: str
    work_items: str
    terms: str
    footer: str

    def as_dict(self) -> dict[str, str]:
        return {
            "header_content": self.header,
            "work_items_content": self.work_items,
            "terms_content": self.terms,
            "footer_content": self.footer,
        }


def format_currency(amount: Any) -> str:
    try:
        value = round_money(to_decimal(amount))
    except ValidationError:
        value = round_money(ZERO)
    sign = "-" if value < ZERO else ""
    return f"{sign}${abs(value):,.2f}"


def format_long_date(day: date) -> str:
    return f"{day:%B} {day.day}, {day.year}"


def _plain_number(value: Any) -> str:
    number = to_decimal(value)
    if number == number.to_integral_value():
        return str(number.quantize(Decimal("1")))
    return format(number.normalize(), "f")


def render_work_items(items: Sequence[Mapping[str, Any]]) -> str:
    """One numbered line per item: ``N. desc - qty unit @ $price = $total``."""
    if not items:
        return "No work items specified."
    lines = []
    for index, item in enumerate(items, start=1):
        quantity = to_decimal(item.get("quantity", 0))
        unit_price = to_decimal(item.get("unit_price", 0))
        lines.append(
            f"{index}. {item.get('description', '')} - {_plain_number(quantity)} "
            f"{item.get('unit', '')} @ {format_currency(unit_price)} = "
            f"{format_currency(quantity * unit_price)}"
        )
    return "\n".join(lines)


def render_header(parties: ContractParties, estimate_number: str | None, today: date) -> str:
    return "\n".join([
        "SERVICE AGREEMENT",
        "",
        parties.company_name,
        f"Contract #: {CONTRACT_NUMBER_PLACEHOLDER}",
        f"Date: {format_long_date(today)}",
        "",
        "CUSTOMER INFORMATION",
        f"Name: {parties.customer_name.strip()}",
        f"Phone: {parties.customer_phone or 'N/A'}",
        f"Email: {parties.customer_email or 'N/A'}",
        f"Property Address: {parties.property_address or 'Address on file'}",
        "",
        f"ESTIMATE REFERENCE: {estimate_number or 'N/A'}",
    ])


def render_footer(parties: ContractParties, pricing: Mapping[str, Any]) -> str:
    tax_rate = to_decimal(pricing.get("tax_rate") or 0)
    return "\n".join([
        "PRICING SUMMARY",
        f"Subtotal: {format_currency(pricing.get('subtotal', 0))}",
        f"Tax ({_plain_number(tax_rate * HUNDRED)}%): {format_currency(pricing.get('tax_amount', 0))}",
        f"TOTAL: {format_currency(pricing.get('total', 0))}",
        "",
        "AGREEMENT",
        "",
        "By signing below, the Customer acknowledges that they have read and agree "
        "to the terms and conditions of this service agreement.",
        "",
        "Customer Signature: ___________________________ Date: _______________",
        "",
        "Printed Name: ________________________________",
        "",
        f"{parties.company_name} appreciates your business!",
    ])


def render_contract(
    parties: ContractParties,
    estimate_number: str | None,
    contract_number: str,
    work_items: Sequence[Mapping[str, Any]],
    pricing: Mapping[str, Any],
    today: date,
    template: ContractTemplate | None = None,
) -> ContractContent:
    """Render all four sections; the contract number replaces its placeholder."""
    template = template or ContractTemplate()
    header = template.header or render_header(parties, estimate_number, today)
    return ContractContent(
        header=header.replace(CONTRACT_NUMBER_PLACEHOLDER, contract_number),
        work_items=render_work_items(work_items),
        terms=template.terms or DEFAULT_TERMS,
        footer=template.footer or render_footer(parties, pricing),
    )
