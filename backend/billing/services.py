import logging

from django.db import models, transaction
from django.utils import timezone

from .calculator import compute_billing_period
from .models import (
    ACTIVATABLE_STATUSES,
    AuditAction,
    AuditLog,
    Customer,
    CustomerStatus,
    Payment,
    PaymentStatus,
)

logger = logging.getLogger(__name__)


class PaymentStateError(Exception):
    """Raised for a payment status change outside the allowed transitions."""


def log_audit(action, user=None, customer=None, payment=None, metadata=None) -> AuditLog:
    return AuditLog.objects.create(
        action=action,
        user=user if user is not None and user.is_authenticated else None,
        customer=customer,
        payment=payment,
        metadata=metadata or {},
    )


def _lock_customer(customer: Customer) -> Customer:
    return Customer.objects.select_for_update().get(pk=customer.pk)


def activate_if_paid(customer: Customer, payment: Payment, user=None) -> bool:
    """Move a new or suspended customer to active once any of their payments is confirmed.

    Must run inside the transaction that confirmed ``payment``.
    """
    if payment.status != PaymentStatus.CONFIRMED:
        return False
    if customer.status not in ACTIVATABLE_STATUSES:
        return False

    previous = customer.status
    customer.status = CustomerStatus.ACTIVE
    customer.save(update_fields=["status", "updated_at"])
    log_audit(
        AuditAction.ACTIVATE_CUSTOMER,
        user=user,
        customer=customer,
        payment=payment,
        metadata={"from": previous, "to": CustomerStatus.ACTIVE},
    )
    logger.info("Customer %s activated by payment %s", customer.customer_id, payment.payment_id)
    return True


@transaction.atomic
def record_payment(customer: Customer, *, recorded_by=None, action=AuditAction.RECORD_PAYMENT, **fields) -> Payment:
    """Append a payment to a customer's history.

    The period is derived from the history when not given. A payment recorded
    directly as confirmed applies the activation rule in the same transaction.
    """
    customer = _lock_customer(customer)
    if not fields.get("period_start") or not fields.get("period_end"):
        period = compute_billing_period(customer, customer.payments.all())
        fields["period_start"], fields["period_end"] = period
    fields.setdefault("status", PaymentStatus.AWAITING_CONFIRMATION)

    payment = Payment.objects.create(customer=customer, recorded_by=recorded_by, **fields)
    log_audit(
        action,
        user=recorded_by,
        customer=customer,
        payment=payment,
        metadata={"amount": payment.amount, "status": payment.status},
    )
    logger.info(
        "Payment %s recorded for %s (%s, %s)",
        payment.payment_id,
        customer.customer_id,
        payment.status,
        payment.amount,
    )
    activate_if_paid(customer, payment, user=recorded_by)
    return payment


def submit_payment_confirmation(customer: Customer, *, submitted_by=None, **fields) -> Payment:
    """Customer-submitted proof of payment; always awaits admin review."""
    fields.pop("period_start", None)
    fields.pop("period_end", None)
    fields["status"] = PaymentStatus.AWAITING_CONFIRMATION
    return record_payment(
        customer,
        recorded_by=submitted_by,
        action=AuditAction.SUBMIT_PAYMENT,
        **fields,
    )


def _transition(payment: Payment, status: str, action: str, user=None) -> Payment:
    payment = Payment.objects.select_for_update().select_related("customer").get(pk=payment.pk)
    if not payment.can_transition_to(status):
        raise PaymentStateError(
            f"Only payments awaiting confirmation can be {status}; this payment is {payment.status}."
        )
    previous = payment.status
    payment.status = status
    payment.save(update_fields=["status", "updated_at"])
    log_audit(
        action,
        user=user,
        customer=payment.customer,
        payment=payment,
        metadata={"from": previous, "to": status},
    )
    logger.info("Payment %s moved %s -> %s", payment.payment_id, previous, status)
    return payment


@transaction.atomic
def confirm_payment(payment: Payment, *, user=None) -> Payment:
    customer = _lock_customer(payment.customer)
    payment = _transition(payment, PaymentStatus.CONFIRMED, AuditAction.CONFIRM_PAYMENT, user=user)
    activate_if_paid(customer, payment, user=user)
    payment.customer = customer
    return payment


@transaction.atomic
def reject_payment(payment: Payment, *, user=None) -> Payment:
    return _transition(payment, PaymentStatus.REJECTED, AuditAction.REJECT_PAYMENT, user=user)


def dashboard_stats(start_date=None, end_date=None, today=None) -> dict:
    """Headline numbers for the admin dashboard.

    Revenue counts confirmed payments dated inside ``start_date``..``end_date``,
    defaulting to the current calendar month.
    """
    today = today or timezone.localdate()
    if start_date is None:
        start_date = today.replace(day=1)
    payments = Payment.objects.filter(status=PaymentStatus.CONFIRMED, payment_date__gte=start_date)
    if end_date is not None:
        payments = payments.filter(payment_date__lte=end_date)

    customers = Customer.objects.all()
    return {
        "total_customers": customers.count(),
        "active_customers": customers.filter(status=CustomerStatus.ACTIVE).count(),
        "suspended_customers": customers.filter(status=CustomerStatus.SUSPENDED).count(),
        "awaiting_payments": Payment.objects.filter(
            status=PaymentStatus.AWAITING_CONFIRMATION
        ).count(),
        "revenue": payments.aggregate(total=models.Sum("amount"))["total"] or 0,
    }
