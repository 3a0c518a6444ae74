import uuid

from django.core.validators import MaxValueValidator, MinValueValidator, RegexValidator
from django.db import models
from django.db.models import F, Q


class TimeStampedModel(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class CustomerStatus(models.TextChoices):
    NEW = "new", "New"
    ACTIVE = "active", "Active"
    SUSPENDED = "suspended", "Suspended (non-payment)"
    INACTIVE = "inactive", "Inactive"
    TERMINATED = "terminated", "Terminated"


# Statuses the confirmation of a payment moves to ACTIVE.
ACTIVATABLE_STATUSES = (CustomerStatus.NEW, CustomerStatus.SUSPENDED)
NON_BILLABLE_STATUSES = (CustomerStatus.INACTIVE, CustomerStatus.TERMINATED)

phone_validator = RegexValidator(
    regex=r"^\+?[0-9\s\-()]*$",
    message="Invalid phone number format.",
)


class Customer(TimeStampedModel):
    customer_id = models.CharField(max_length=50, unique=True)
    account = models.OneToOneField(
        "users.User",
        on_delete=models.SET_NULL,
        related_name="customer",
        null=True,
        blank=True,
    )
    name = models.CharField(max_length=100)
    address = models.CharField(max_length=255)
    phone = models.CharField(max_length=15, validators=[phone_validator])
    email = models.EmailField(blank=True, null=True)

    package_name = models.CharField(max_length=100)
    join_date = models.DateField()
    installation_date = models.DateField(blank=True, null=True)
    billing_cycle_day = models.PositiveSmallIntegerField(
        default=1,
        validators=[MinValueValidator(1), MaxValueValidator(28)],
    )
    status = models.CharField(
        max_length=20,
        choices=CustomerStatus.choices,
        default=CustomerStatus.NEW,
    )
    notes = models.TextField(max_length=500, blank=True)

    onu_mac_address = models.CharField(max_length=17, blank=True)
    ip_address = models.GenericIPAddressField(blank=True, null=True)

    class Meta:
        ordering = ["customer_id"]
        constraints = [
            models.CheckConstraint(
                condition=Q(billing_cycle_day__gte=1) & Q(billing_cycle_day__lte=28),
                name="customer_billing_cycle_day_1_28",
            )
        ]

    def __str__(self) -> str:
        return f"{self.name} ({self.customer_id})"

    @property
    def payment_history(self):
        """Payments in insertion order."""
        return self.payments.order_by("id")


class PaymentMethod(models.TextChoices):
    TRANSFER = "transfer", "Bank Transfer"
    CASH_COLLECTOR = "cash_collector", "Cash (Collector)"
    ONLINE = "online", "Online"
    OTHER = "other", "Other"


class PaymentStatus(models.TextChoices):
    AWAITING_CONFIRMATION = "awaiting_confirmation", "Awaiting Confirmation"
    CONFIRMED = "confirmed", "Confirmed"
    REJECTED = "rejected", "Rejected"


PAYMENT_TRANSITIONS = {
    PaymentStatus.AWAITING_CONFIRMATION: (PaymentStatus.CONFIRMED, PaymentStatus.REJECTED),
    PaymentStatus.CONFIRMED: (),
    PaymentStatus.REJECTED: (),
}


class Payment(TimeStampedModel):
    payment_id = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="payments")

    payment_date = models.DateField()
    amount = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    period_start = models.DateField()
    period_end = models.DateField()

    proof_url = models.URLField(max_length=500, blank=True)
    proof_image = models.TextField(blank=True)
    signature_text = models.CharField(max_length=255, blank=True)
    method = models.CharField(
        max_length=20,
        choices=PaymentMethod.choices,
        default=PaymentMethod.TRANSFER,
    )
    notes = models.TextField(max_length=500, blank=True)
    status = models.CharField(
        max_length=30,
        choices=PaymentStatus.choices,
        default=PaymentStatus.AWAITING_CONFIRMATION,
    )
    recorded_by = models.ForeignKey(
        "users.User",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="recorded_payments",
    )

    class Meta:
        ordering = ["id"]
        indexes = [
            models.Index(fields=["customer", "status"], name="payment_customer_status_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(period_end__gte=F("period_start")),
                name="payment_period_end_after_start",
            ),
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name="payment_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.payment_id} - {self.customer.customer_id} ({self.status})"

    def can_transition_to(self, status: str) -> bool:
        return status in PAYMENT_TRANSITIONS.get(self.status, ())


class AuditAction(models.TextChoices):
    CREATE_CUSTOMER = "create_customer", "Create Customer"
    UPDATE_CUSTOMER = "update_customer", "Update Customer"
    UPDATE_PROFILE = "update_profile", "Update Profile"
    RECORD_PAYMENT = "record_payment", "Record Payment"
    SUBMIT_PAYMENT = "submit_payment", "Submit Payment"
    UPDATE_PAYMENT = "update_payment", "Update Payment"
    CONFIRM_PAYMENT = "confirm_payment", "Confirm Payment"
    REJECT_PAYMENT = "reject_payment", "Reject Payment"
    ACTIVATE_CUSTOMER = "activate_customer", "Activate Customer"


class AuditLog(TimeStampedModel):
    action = models.CharField(max_length=30, choices=AuditAction.choices)
    user = models.ForeignKey(
        "users.User",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="audit_logs",
    )
    customer = models.ForeignKey(
        Customer,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="audit_logs",
    )
    payment = models.ForeignKey(
        Payment,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="audit_logs",
    )
    metadata = models.JSONField(default=dict, blank=True)

    def __str__(self) -> str:
        return f"{self.action} ({self.created_at})"
