import uuid

import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Customer",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("customer_id", models.CharField(max_length=50, unique=True)),
                ("name", models.CharField(max_length=100)),
                ("address", models.CharField(max_length=255)),
                (
                    "phone",
                    models.CharField(
                        max_length=15,
                        validators=[
                            django.core.validators.RegexValidator(
                                message="Invalid phone number format.",
                                regex="^\\+?[0-9\\s\\-()]*$",
                            )
                        ],
                    ),
                ),
                ("email", models.EmailField(blank=True, max_length=254, null=True)),
                ("package_name", models.CharField(max_length=100)),
                ("join_date", models.DateField()),
                ("installation_date", models.DateField(blank=True, null=True)),
                (
                    "billing_cycle_day",
                    models.PositiveSmallIntegerField(
                        default=1,
                        validators=[
                            django.core.validators.MinValueValidator(1),
                            django.core.validators.MaxValueValidator(28),
                        ],
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("new", "New"),
                            ("active", "Active"),
                            ("suspended", "Suspended (non-payment)"),
                            ("inactive", "Inactive"),
                            ("terminated", "Terminated"),
                        ],
                        default="new",
                        max_length=20,
                    ),
                ),
                ("notes", models.TextField(blank=True, max_length=500)),
                ("onu_mac_address", models.CharField(blank=True, max_length=17)),
                ("ip_address", models.GenericIPAddressField(blank=True, null=True)),
                (
                    "account",
                    models.OneToOneField(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="customer",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["customer_id"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("billing_cycle_day__gte", 1), ("billing_cycle_day__lte", 28)),
                        name="customer_billing_cycle_day_1_28",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("payment_id", models.UUIDField(default=uuid.uuid4, editable=False, unique=True)),
                ("payment_date", models.DateField()),
                (
                    "amount",
                    models.PositiveIntegerField(validators=[django.core.validators.MinValueValidator(1)]),
                ),
                ("period_start", models.DateField()),
                ("period_end", models.DateField()),
                ("proof_url", models.URLField(blank=True, max_length=500)),
                ("proof_image", models.TextField(blank=True)),
                ("signature_text", models.CharField(blank=True, max_length=255)),
                (
                    "method",
                    models.CharField(
                        choices=[
                            ("transfer", "Bank Transfer"),
                            ("cash_collector", "Cash (Collector)"),
                            ("online", "Online"),
                            ("other", "Other"),
                        ],
                        default="transfer",
                        max_length=20,
                    ),
                ),
                ("notes", models.TextField(blank=True, max_length=500)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("awaiting_confirmation", "Awaiting Confirmation"),
                            ("confirmed", "Confirmed"),
                            ("rejected", "Rejected"),
                        ],
                        default="awaiting_confirmation",
                        max_length=30,
                    ),
                ),
                (
                    "customer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments",
                        to="billing.customer",
                    ),
                ),
                (
                    "recorded_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="recorded_payments",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["id"],
                "indexes": [
                    models.Index(fields=["customer", "status"], name="payment_customer_status_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("period_end__gte", models.F("period_start"))),
                        name="payment_period_end_after_start",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("amount__gt", 0)),
                        name="payment_amount_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="AuditLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "action",
                    models.CharField(
                        choices=[
                            ("create_customer", "Create Customer"),
                            ("update_customer", "Update Customer"),
                            ("update_profile", "Update Profile"),
                            ("record_payment", "Record Payment"),
                            ("submit_payment", "Submit Payment"),
                            ("update_payment", "Update Payment"),
                            ("confirm_payment", "Confirm Payment"),
                            ("reject_payment", "Reject Payment"),
                            ("activate_customer", "Activate Customer"),
                        ],
                        max_length=30,
                    ),
                ),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "customer",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="audit_logs",
                        to="billing.customer",
                    ),
                ),
                (
                    "payment",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="audit_logs",
                        to="billing.payment",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="audit_logs",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
        ),
    ]
