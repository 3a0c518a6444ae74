"""Billing period and due-amount derivation.

Everything here is a pure function over a customer snapshot and its payment
history. Callers pass ``today`` explicitly in tests; views rely on the
project-local date. Nothing in this module touches the database, so the
``payments`` argument may be a queryset, a list of ``Payment`` instances or
any iterable of objects with ``status``, ``period_start`` and ``period_end``.
"""

from datetime import date, timedelta
from typing import Iterable, NamedTuple, Sequence

from dateutil.relativedelta import relativedelta
from django.conf import settings
from django.utils import timezone

from .models import NON_BILLABLE_STATUSES, PaymentStatus

DEFAULT_PACKAGE_PRICES: Sequence[tuple[str, int]] = (
    ("10 Mbps", 100000),
    ("20 Mbps", 150000),
    ("30 Mbps", 200000),
    ("50 Mbps", 250000),
    ("100 Mbps", 350000),
)
DEFAULT_PACKAGE_PRICE = 125000


class BillingPeriod(NamedTuple):
    start: date
    end: date


class BillingSummary(NamedTuple):
    due_amount: int
    package_price: int
    next_due_date: date
    next_period: BillingPeriod


def _today(today: date | None) -> date:
    return today or timezone.localdate()


def _latest_by_period_end(payments: Iterable, statuses) -> object | None:
    candidates = [p for p in payments if p.status in statuses]
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.period_end)


def _align_to_cycle_day(day: date, cycle_day: int) -> date:
    """First billing-cycle day on or after ``day``."""
    aligned = day.replace(day=cycle_day)
    if day.day > cycle_day:
        aligned += relativedelta(months=1)
    return aligned


def current_cycle_start(cycle_day: int, today: date | None = None) -> date:
    """Most recent billing-cycle day on or before ``today``."""
    today = _today(today)
    start = today.replace(day=cycle_day)
    if start > today:
        start -= relativedelta(months=1)
    return start


def price_for_package(package_name: str | None, prices=None, default: int | None = None) -> int:
    """Monthly price of a package, matched by substring in table order."""
    if prices is None:
        prices = getattr(settings, "ELANET_PACKAGE_PRICES", DEFAULT_PACKAGE_PRICES)
    if default is None:
        default = getattr(settings, "ELANET_DEFAULT_PACKAGE_PRICE", DEFAULT_PACKAGE_PRICE)
    name = package_name or ""
    for keyword, price in prices:
        if keyword in name:
            return int(price)
    return int(default)


def compute_next_due_date(customer, payments: Iterable, today: date | None = None) -> date:
    today = _today(today)
    payments = list(payments)
    cycle_day = customer.billing_cycle_day

    last_confirmed = _latest_by_period_end(payments, (PaymentStatus.CONFIRMED,))
    if last_confirmed is not None:
        due = last_confirmed.period_end + timedelta(days=1)
        if due < today:
            due = today.replace(day=cycle_day)
            if due < today:
                due += relativedelta(months=1)
        return max(due, customer.join_date)

    due = _align_to_cycle_day(customer.join_date, cycle_day)
    while due < today:
        due += relativedelta(months=1)
    return due


def compute_due_amount(customer, payments: Iterable, today: date | None = None, prices=None) -> int:
    if customer.status in NON_BILLABLE_STATUSES:
        return 0

    payments = list(payments)
    cycle_start = current_cycle_start(customer.billing_cycle_day, today)

    last_confirmed = _latest_by_period_end(payments, (PaymentStatus.CONFIRMED,))
    if last_confirmed is not None and last_confirmed.period_end >= cycle_start:
        return 0

    # a pending submission for this cycle is not billed twice
    if any(
        p.status == PaymentStatus.AWAITING_CONFIRMATION and p.period_end >= cycle_start
        for p in payments
    ):
        return 0

    return price_for_package(customer.package_name, prices=prices)


def compute_billing_period(customer, payments: Iterable) -> BillingPeriod:
    """Period a newly recorded payment pays for.

    Starts the day after the latest confirmed or pending period, or at the
    first billing-cycle day on or after the join date when there is none.
    Payments confirmed out of chronological order may overlap.
    """
    last = _latest_by_period_end(
        payments, (PaymentStatus.CONFIRMED, PaymentStatus.AWAITING_CONFIRMATION)
    )
    if last is not None:
        start = last.period_end + timedelta(days=1)
    else:
        start = _align_to_cycle_day(customer.join_date, customer.billing_cycle_day)
    end = start + relativedelta(months=1) - timedelta(days=1)
    return BillingPeriod(start, end)


def billing_summary(customer, payments: Iterable, today: date | None = None) -> BillingSummary:
    today = _today(today)
    payments = list(payments)
    return BillingSummary(
        due_amount=compute_due_amount(customer, payments, today=today),
        package_price=price_for_package(customer.package_name),
        next_due_date=compute_next_due_date(customer, payments, today=today),
        next_period=compute_billing_period(customer, payments),
    )
