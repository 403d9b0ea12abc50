"""Summary: Merge-field rendering for reminder templates.

Importance: Turns a stored subject and body into the text and HTML a
customer receives.
Alternatives: Use a full template engine such as Jinja2.
"""

from __future__ import annotations

import html
import re
from datetime import datetime
from decimal import Decimal

from nudgeflow.models import Account, Customer, EmailTemplate, Invoice, OutgoingMessage


MERGE_FIELD = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def render(template_text: str, fields: dict[str, str | None]) -> str:
    """Summary: Replace ``{{ field }}`` markers with their values.

    Importance: Unknown fields and fields without a value stay verbatim so the
    owner can spot them in the sent copy.
    Alternatives: Raise on unknown fields.
    """

    def _substitute(match: re.Match[str]) -> str:
        value = fields.get(match.group(1))
        return match.group(0) if value is None else value

    return MERGE_FIELD.sub(_substitute, template_text)


def merge_fields(invoice: Invoice, customer: Customer, account: Account) -> dict[str, str | None]:
    return {
        "customerName": customer.name,
        "invoiceNumber": invoice.number,
        "amount": format_amount(invoice.amount),
        "dueDate": format_date(invoice.due_date),
        "issueDate": format_date(invoice.issue_date),
        "description": invoice.description,
        "companyName": account.company_name or None,
    }


def build_message(
    template: EmailTemplate,
    invoice: Invoice,
    customer: Customer,
    account: Account,
) -> OutgoingMessage:
    """Summary: Render a template into an unbranded outgoing message.

    Importance: The HTML part is the escaped text wrapped in a minimal
    document so the footer has a ``</body>`` to land before.
    Alternatives: Store separate HTML and text templates.
    """

    fields = merge_fields(invoice, customer, account)
    subject = render(template.subject, fields)
    text = render(template.body, fields)
    return OutgoingMessage(to=customer.email, subject=subject, html=text_to_html(text), text=text)


def text_to_html(text: str) -> str:
    body = "<br>\n".join(html.escape(line) for line in text.split("\n"))
    return f"<html><body>{body}</body></html>"


def format_amount(amount: Decimal) -> str:
    return f"{amount:,.2f}"


def format_date(value: datetime | None) -> str | None:
    if value is None:
        return None
    return f"{value:%B} {value.day}, {value.year}"
