import csv
import io
from datetime import date, timedelta

from dateutil.relativedelta import relativedelta
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.core.management import call_command
from django.db import DatabaseError
from django.test import SimpleTestCase, TestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from users.models import UserRole

from .calculator import (
    BillingPeriod,
    compute_billing_period,
    compute_due_amount,
    compute_next_due_date,
    current_cycle_start,
    price_for_package,
)
from .exceptions import SERVER_ERROR_MESSAGE, api_exception_handler
from .models import AuditAction, AuditLog, Customer, CustomerStatus, Payment, PaymentStatus
from .services import (
    PaymentStateError,
    confirm_payment,
    dashboard_stats,
    record_payment,
    reject_payment,
    submit_payment_confirmation,
)


def make_customer(**kwargs):
    defaults = {
        "customer_id": "ELA-001",
        "name": "Budi Santoso",
        "address": "Jl. Merdeka No. 10",
        "phone": "081234567890",
        "package_name": "20 Mbps",
        "join_date": date(2023, 1, 15),
        "billing_cycle_day": 15,
        "status": CustomerStatus.ACTIVE,
    }
    defaults.update(kwargs)
    return Customer(**defaults)


def make_payment(start, end, status=PaymentStatus.CONFIRMED, **kwargs):
    return Payment(
        payment_date=kwargs.pop("payment_date", start),
        amount=kwargs.pop("amount", 150000),
        period_start=start,
        period_end=end,
        status=status,
        **kwargs,
    )


class NextDueDateTests(SimpleTestCase):
    def test_no_payments_returns_join_month_cycle_day(self):
        customer = make_customer(join_date=date(2023, 1, 15), billing_cycle_day=15)
        self.assertEqual(compute_next_due_date(customer, [], today=date(2023, 1, 10)), date(2023, 1, 15))

    def test_no_payments_join_day_after_cycle_day_advances_a_month(self):
        customer = make_customer(join_date=date(2023, 1, 20), billing_cycle_day=15)
        self.assertEqual(compute_next_due_date(customer, [], today=date(2023, 1, 20)), date(2023, 2, 15))

    def test_no_payments_rolls_forward_to_today(self):
        customer = make_customer(join_date=date(2023, 1, 15), billing_cycle_day=15)
        due = compute_next_due_date(customer, [], today=date(2023, 3, 20))
        self.assertEqual(due, date(2023, 4, 15))
        self.assertEqual(due.day, customer.billing_cycle_day)

    def test_no_payments_rolls_over_year_boundary(self):
        customer = make_customer(join_date=date(2023, 12, 20), billing_cycle_day=5)
        self.assertEqual(compute_next_due_date(customer, [], today=date(2023, 12, 20)), date(2024, 1, 5))

    def test_day_after_latest_confirmed_period(self):
        customer = make_customer(join_date=date(2023, 1, 15), billing_cycle_day=15)
        payments = [
            make_payment(date(2024, 1, 15), date(2024, 2, 14)),
            make_payment(date(2024, 2, 15), date(2024, 3, 14)),
        ]
        self.assertEqual(compute_next_due_date(customer, payments, today=date(2024, 3, 1)), date(2024, 3, 15))

    def test_stale_confirmed_period_moves_to_current_cycle_day(self):
        customer = make_customer(billing_cycle_day=15)
        payments = [make_payment(date(2023, 12, 15), date(2024, 1, 14))]
        self.assertEqual(compute_next_due_date(customer, payments, today=date(2024, 3, 10)), date(2024, 3, 15))
        self.assertEqual(compute_next_due_date(customer, payments, today=date(2024, 3, 20)), date(2024, 4, 15))

    def test_stale_confirmed_period_rolls_into_january(self):
        customer = make_customer(billing_cycle_day=10)
        payments = [make_payment(date(2023, 10, 1), date(2023, 10, 31))]
        self.assertEqual(compute_next_due_date(customer, payments, today=date(2023, 12, 20)), date(2024, 1, 10))

    def test_pending_and_rejected_payments_are_ignored(self):
        customer = make_customer(join_date=date(2023, 1, 15), billing_cycle_day=15)
        payments = [
            make_payment(date(2023, 1, 15), date(2023, 2, 14), status=PaymentStatus.AWAITING_CONFIRMATION),
            make_payment(date(2023, 2, 15), date(2023, 3, 14), status=PaymentStatus.REJECTED),
        ]
        self.assertEqual(compute_next_due_date(customer, payments, today=date(2023, 1, 1)), date(2023, 1, 15))

    def test_never_before_join_date_or_last_period_end(self):
        customer = make_customer(join_date=date(2024, 5, 3), billing_cycle_day=1)
        payments = [make_payment(date(2024, 5, 3), date(2024, 6, 2))]
        due = compute_next_due_date(customer, payments, today=date(2024, 5, 10))
        self.assertGreater(due, date(2024, 6, 2))
        self.assertGreaterEqual(due, customer.join_date)


class DueAmountTests(SimpleTestCase):
    today = date(2024, 3, 20)

    def test_inactive_and_terminated_customers_owe_nothing(self):
        for customer_status in (CustomerStatus.INACTIVE, CustomerStatus.TERMINATED):
            customer = make_customer(status=customer_status, package_name="100 Mbps")
            stale = [make_payment(date(2023, 1, 15), date(2023, 2, 14))]
            self.assertEqual(compute_due_amount(customer, [], today=self.today), 0)
            self.assertEqual(compute_due_amount(customer, stale, today=self.today), 0)

    def test_confirmed_payment_covering_today_means_nothing_due(self):
        customer = make_customer(package_name="20 Mbps")
        payments = [make_payment(self.today - timedelta(days=20), self.today + timedelta(days=10))]
        self.assertEqual(compute_due_amount(customer, payments, today=self.today), 0)

    def test_unpaid_100_mbps_customer_owes_package_price(self):
        customer = make_customer(package_name="100 Mbps")
        self.assertEqual(compute_due_amount(customer, [], today=self.today), 350000)

    def test_confirmed_payment_before_current_cycle_is_not_enough(self):
        customer = make_customer(package_name="10 Mbps", billing_cycle_day=15)
        payments = [make_payment(date(2024, 2, 15), date(2024, 3, 14))]
        self.assertEqual(compute_due_amount(customer, payments, today=self.today), 100000)

    def test_pending_payment_for_current_cycle_suppresses_billing(self):
        customer = make_customer(package_name="30 Mbps", billing_cycle_day=15)
        payments = [
            make_payment(date(2024, 3, 15), date(2024, 4, 14), status=PaymentStatus.AWAITING_CONFIRMATION)
        ]
        self.assertEqual(compute_due_amount(customer, payments, today=self.today), 0)

    def test_rejected_payment_does_not_count(self):
        customer = make_customer(package_name="50 Mbps", billing_cycle_day=15)
        payments = [make_payment(date(2024, 3, 15), date(2024, 4, 14), status=PaymentStatus.REJECTED)]
        self.assertEqual(compute_due_amount(customer, payments, today=self.today), 250000)

    def test_unmatched_package_falls_back_to_default_price(self):
        customer = make_customer(package_name="Fiber Pro Max")
        self.assertEqual(compute_due_amount(customer, [], today=self.today), 125000)

    def test_repeated_calls_are_identical(self):
        customer = make_customer(package_name="20 Mbps")
        payments = [make_payment(date(2024, 1, 15), date(2024, 2, 14))]
        first = (
            compute_due_amount(customer, payments, today=self.today),
            compute_next_due_date(customer, payments, today=self.today),
        )
        second = (
            compute_due_amount(customer, payments, today=self.today),
            compute_next_due_date(customer, payments, today=self.today),
        )
        self.assertEqual(first, second)


class PriceTableTests(SimpleTestCase):
    def test_substring_match(self):
        self.assertEqual(price_for_package("Paket Rumah 50 Mbps"), 250000)
        self.assertEqual(price_for_package("100 Mbps"), 350000)
        self.assertEqual(price_for_package("10 Mbps"), 100000)

    def test_missing_package_name_uses_default(self):
        self.assertEqual(price_for_package(None), 125000)
        self.assertEqual(price_for_package(""), 125000)

    def test_custom_table(self):
        prices = [("Gold", 500000)]
        self.assertEqual(price_for_package("Gold Plus", prices=prices, default=1), 500000)
        self.assertEqual(price_for_package("Silver", prices=prices, default=1), 1)


class BillingPeriodTests(SimpleTestCase):
    def test_first_period_aligns_join_date_to_cycle_day(self):
        customer = make_customer(join_date=date(2024, 1, 3), billing_cycle_day=5)
        self.assertEqual(compute_billing_period(customer, []), BillingPeriod(date(2024, 1, 5), date(2024, 2, 4)))

    def test_first_period_starts_next_month_when_joined_after_cycle_day(self):
        customer = make_customer(join_date=date(2024, 1, 10), billing_cycle_day=5)
        self.assertEqual(compute_billing_period(customer, []), BillingPeriod(date(2024, 2, 5), date(2024, 3, 4)))

    def test_continues_after_latest_confirmed_or_pending_period(self):
        customer = make_customer(join_date=date(2024, 1, 3), billing_cycle_day=5)
        payments = [
            make_payment(date(2024, 1, 5), date(2024, 2, 4)),
            make_payment(date(2024, 2, 5), date(2024, 3, 4), status=PaymentStatus.AWAITING_CONFIRMATION),
            make_payment(date(2024, 3, 5), date(2024, 4, 4), status=PaymentStatus.REJECTED),
        ]
        self.assertEqual(compute_billing_period(customer, payments), BillingPeriod(date(2024, 3, 5), date(2024, 4, 4)))

    def test_period_crosses_year_boundary(self):
        customer = make_customer(billing_cycle_day=15)
        payments = [make_payment(date(2024, 11, 15), date(2024, 12, 14))]
        self.assertEqual(compute_billing_period(customer, payments), BillingPeriod(date(2024, 12, 15), date(2025, 1, 14)))

    def test_current_cycle_start(self):
        self.assertEqual(current_cycle_start(15, date(2024, 3, 10)), date(2024, 2, 15))
        self.assertEqual(current_cycle_start(15, date(2024, 3, 15)), date(2024, 3, 15))
        self.assertEqual(current_cycle_start(15, date(2024, 1, 10)), date(2023, 12, 15))


class PaymentServiceTests(TestCase):
    def setUp(self):
        self.today = timezone.localdate()
        self.admin = get_user_model().objects.create_user(
            username="admin-service",
            password="pass1234",
            role=UserRole.ADMIN,
        )
        self.customer = make_customer(
            join_date=self.today - relativedelta(months=3),
            billing_cycle_day=1,
            status=CustomerStatus.NEW,
        )
        self.customer.save()

    def _covering_today(self, **kwargs):
        fields = {
            "payment_date": self.today,
            "amount": 150000,
            "period_start": self.today - timedelta(days=5),
            "period_end": self.today + timedelta(days=20),
        }
        fields.update(kwargs)
        return fields

    def test_payments_are_kept_in_insertion_order_with_submitted_status(self):
        statuses = [PaymentStatus.CONFIRMED, PaymentStatus.AWAITING_CONFIRMATION, PaymentStatus.REJECTED]
        created = [
            record_payment(
                self.customer,
                recorded_by=self.admin,
                **self._covering_today(
                    status=payment_status,
                    payment_date=self.today - timedelta(days=index),
                ),
            )
            for index, payment_status in enumerate(reversed(statuses))
        ]
        history = list(self.customer.payment_history)
        self.assertEqual([p.payment_id for p in history], [p.payment_id for p in created])
        self.assertEqual([p.status for p in history], list(reversed(statuses)))

    def test_record_payment_derives_period_when_missing(self):
        payment = record_payment(self.customer, payment_date=self.today, amount=150000)
        expected = compute_billing_period(self.customer, [])
        self.assertEqual((payment.period_start, payment.period_end), tuple(expected))
        self.assertEqual(payment.status, PaymentStatus.AWAITING_CONFIRMATION)

        second = record_payment(self.customer, payment_date=self.today, amount=150000)
        self.assertEqual(second.period_start, payment.period_end + timedelta(days=1))

    def test_recording_confirmed_payment_activates_new_customer(self):
        record_payment(self.customer, recorded_by=self.admin, **self._covering_today(status=PaymentStatus.CONFIRMED))
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.status, CustomerStatus.ACTIVE)
        self.assertTrue(
            AuditLog.objects.filter(action=AuditAction.ACTIVATE_CUSTOMER, customer=self.customer).exists()
        )

    def test_confirming_payment_reactivates_suspended_customer(self):
        self.customer.status = CustomerStatus.SUSPENDED
        self.customer.save(update_fields=["status"])
        payment = submit_payment_confirmation(self.customer, payment_date=self.today, amount=150000)
        payment.period_start = self.today - timedelta(days=5)
        payment.period_end = self.today + timedelta(days=20)
        payment.save(update_fields=["period_start", "period_end"])

        confirmed = confirm_payment(payment, user=self.admin)

        self.assertEqual(confirmed.status, PaymentStatus.CONFIRMED)
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.status, CustomerStatus.ACTIVE)

    def test_first_confirmed_submission_activates_back_dated_new_customer(self):
        payment = submit_payment_confirmation(self.customer, payment_date=self.today, amount=150000)
        # the first period is anchored at the join-date cycle, months before today
        self.assertLess(payment.period_end, self.today)

        confirm_payment(payment, user=self.admin)

        self.customer.refresh_from_db()
        self.assertEqual(self.customer.status, CustomerStatus.ACTIVE)

    def test_confirming_arrears_payment_reactivates_suspended_customer(self):
        self.customer.status = CustomerStatus.SUSPENDED
        self.customer.save(update_fields=["status"])
        payment = record_payment(
            self.customer,
            **self._covering_today(
                period_start=self.today - timedelta(days=60),
                period_end=self.today - timedelta(days=31),
            ),
        )
        confirm_payment(payment, user=self.admin)
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.status, CustomerStatus.ACTIVE)

    def test_confirming_does_not_touch_inactive_customer(self):
        self.customer.status = CustomerStatus.INACTIVE
        self.customer.save(update_fields=["status"])
        payment = record_payment(self.customer, **self._covering_today())
        confirm_payment(payment, user=self.admin)
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.status, CustomerStatus.INACTIVE)

    def test_submission_is_always_awaiting_confirmation(self):
        payment = submit_payment_confirmation(
            self.customer,
            payment_date=self.today,
            amount=150000,
            status=PaymentStatus.CONFIRMED,
        )
        self.assertEqual(payment.status, PaymentStatus.AWAITING_CONFIRMATION)
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.status, CustomerStatus.NEW)

    def test_terminal_states_have_no_transitions(self):
        payment = record_payment(self.customer, **self._covering_today())
        reject_payment(payment, user=self.admin)
        payment.refresh_from_db()
        self.assertEqual(payment.status, PaymentStatus.REJECTED)
        with self.assertRaises(PaymentStateError):
            confirm_payment(payment, user=self.admin)

        other = record_payment(self.customer, **self._covering_today())
        confirm_payment(other, user=self.admin)
        with self.assertRaises(PaymentStateError):
            confirm_payment(other, user=self.admin)
        with self.assertRaises(PaymentStateError):
            reject_payment(other, user=self.admin)

    def test_dashboard_stats(self):
        record_payment(self.customer, **self._covering_today(status=PaymentStatus.CONFIRMED, amount=150000))
        record_payment(self.customer, **self._covering_today(amount=90000))
        suspended = make_customer(customer_id="ELA-002", phone="081200000002", status=CustomerStatus.SUSPENDED)
        suspended.save()

        stats = dashboard_stats(today=self.today)
        self.assertEqual(stats["total_customers"], 2)
        self.assertEqual(stats["active_customers"], 1)
        self.assertEqual(stats["suspended_customers"], 1)
        self.assertEqual(stats["awaiting_payments"], 1)
        self.assertEqual(stats["revenue"], 150000)


class AdminApiTestCase(TestCase):
    def setUp(self):
        cache.clear()
        self.today = timezone.localdate()
        self.admin = get_user_model().objects.create_user(
            username="admin",
            password="pass1234",
            role=UserRole.ADMIN,
        )
        self.client = APIClient()
        self.client.force_authenticate(self.admin)
        self.customer = make_customer(
            join_date=self.today - relativedelta(months=2),
            billing_cycle_day=1,
            package_name="100 Mbps",
        )
        self.customer.save()


class CustomerApiTests(AdminApiTestCase):
    def _payload(self, **kwargs):
        data = {
            "customer_id": "ELA-100",
            "name": "Siti Aminah",
            "address": "Jl. Sudirman No. 5",
            "phone": "081298765432",
            "email": "siti@example.com",
            "package_name": "10 Mbps",
            "join_date": "2024-01-15",
            "billing_cycle_day": 15,
        }
        data.update(kwargs)
        return data

    def test_retrieve_customer_with_dotted_id(self):
        make_customer(customer_id="ELA.001", phone="081200000009").save()
        response = self.client.get(reverse("customers-detail", kwargs={"customer_id": "ELA.001"}))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["customer_id"], "ELA.001")

    def test_create_customer_starts_new_with_empty_history(self):
        response = self.client.post(reverse("customers-list"), data=self._payload(), format="json")
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["status"], CustomerStatus.NEW)
        customer = Customer.objects.get(customer_id="ELA-100")
        self.assertFalse(customer.payments.exists())
        self.assertTrue(AuditLog.objects.filter(action=AuditAction.CREATE_CUSTOMER, customer=customer).exists())

    def test_billing_cycle_day_must_be_between_1_and_28(self):
        for day in (0, 29):
            response = self.client.post(
                reverse("customers-list"), data=self._payload(billing_cycle_day=day), format="json"
            )
            self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
            self.assertIn("billing_cycle_day", response.data)

    def test_duplicate_customer_id_rejected(self):
        response = self.client.post(
            reverse("customers-list"), data=self._payload(customer_id=self.customer.customer_id), format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_customer_id_cannot_change(self):
        url = reverse("customers-detail", kwargs={"customer_id": self.customer.customer_id})
        response = self.client.patch(url, data={"customer_id": "ELA-999"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_admin_can_change_status_freely(self):
        url = reverse("customers-detail", kwargs={"customer_id": self.customer.customer_id})
        response = self.client.patch(url, data={"status": CustomerStatus.TERMINATED}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.status, CustomerStatus.TERMINATED)

    def test_delete_refused_when_payments_exist(self):
        record_payment(self.customer, payment_date=self.today, amount=350000)
        url = reverse("customers-detail", kwargs={"customer_id": self.customer.customer_id})
        response = self.client.delete(url)
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertTrue(Customer.objects.filter(pk=self.customer.pk).exists())

    def test_delete_without_payments(self):
        url = reverse("customers-detail", kwargs={"customer_id": self.customer.customer_id})
        response = self.client.delete(url)
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)

    def test_lookup_by_phone(self):
        response = self.client.get(reverse("customers-lookup"), data={"q": " 081234567890/"})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["customer_id"], self.customer.customer_id)

    def test_lookup_not_found(self):
        response = self.client.get(reverse("customers-lookup"), data={"q": "nobody"})
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data["detail"], "Customer not found")

    def test_unknown_customer_returns_404(self):
        response = self.client.get(reverse("customers-billing", kwargs={"customer_id": "missing"}))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_billing_summary(self):
        response = self.client.get(reverse("customers-billing", kwargs={"customer_id": self.customer.customer_id}))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["due_amount"], 350000)
        self.assertEqual(response.data["package_price"], 350000)
        self.assertIn("next_due_date", response.data)
        self.assertIn("start", response.data["next_period"])

    def test_qr_returns_png(self):
        response = self.client.get(reverse("customers-qr", kwargs={"customer_id": self.customer.customer_id}))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response["Content-Type"], "image/png")

    def test_customer_role_cannot_use_admin_api(self):
        user = get_user_model().objects.create_user(username="pelanggan", password="pass1234")
        client = APIClient()
        client.force_authenticate(user)
        response = client.get(reverse("customers-list"))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)


class PaymentApiTests(AdminApiTestCase):
    def _payments_url(self):
        return reverse("customers-payments", kwargs={"customer_id": self.customer.customer_id})

    def test_record_confirmed_payment_activates_customer(self):
        self.customer.status = CustomerStatus.SUSPENDED
        self.customer.save(update_fields=["status"])
        data = {
            "payment_date": self.today.isoformat(),
            "amount": 350000,
            "period_start": (self.today - timedelta(days=3)).isoformat(),
            "period_end": (self.today + timedelta(days=27)).isoformat(),
            "method": "cash_collector",
            "status": PaymentStatus.CONFIRMED,
        }
        response = self.client.post(self._payments_url(), data=data, format="json")
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["status"], PaymentStatus.CONFIRMED)
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.status, CustomerStatus.ACTIVE)

        billing = self.client.get(reverse("customers-billing", kwargs={"customer_id": self.customer.customer_id}))
        self.assertEqual(billing.data["due_amount"], 0)

    def test_period_end_before_start_rejected(self):
        data = {
            "payment_date": self.today.isoformat(),
            "amount": 350000,
            "period_start": "2024-03-15",
            "period_end": "2024-03-01",
        }
        response = self.client.post(self._payments_url(), data=data, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("period_end", response.data)
        self.assertFalse(Payment.objects.exists())

    def test_period_requires_both_ends(self):
        data = {"payment_date": self.today.isoformat(), "amount": 350000, "period_start": "2024-03-15"}
        response = self.client.post(self._payments_url(), data=data, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_amount_must_be_positive(self):
        data = {"payment_date": self.today.isoformat(), "amount": 0}
        response = self.client.post(self._payments_url(), data=data, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_history_in_insertion_order(self):
        first = record_payment(self.customer, payment_date=self.today, amount=350000)
        second = record_payment(self.customer, payment_date=self.today - timedelta(days=40), amount=350000)
        response = self.client.get(self._payments_url())
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(
            [row["payment_id"] for row in response.data],
            [str(first.payment_id), str(second.payment_id)],
        )

    def test_list_all_payments_newest_first_with_status_filter(self):
        old = record_payment(self.customer, payment_date=self.today - timedelta(days=40), amount=350000)
        new = record_payment(self.customer, payment_date=self.today, amount=350000)
        reject_payment(old)

        response = self.client.get(reverse("payments-list"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([row["payment_id"] for row in response.data], [str(new.payment_id), str(old.payment_id)])
        self.assertEqual(response.data[0]["customer_name"], self.customer.name)

        response = self.client.get(reverse("payments-list"), data={"status": PaymentStatus.REJECTED})
        self.assertEqual([row["payment_id"] for row in response.data], [str(old.payment_id)])

    def test_confirm_and_reject_endpoints(self):
        payment = record_payment(self.customer, payment_date=self.today, amount=350000)
        url = reverse("payments-confirm", kwargs={"payment_id": payment.payment_id})
        response = self.client.post(url)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], PaymentStatus.CONFIRMED)

        response = self.client.post(reverse("payments-reject", kwargs={"payment_id": payment.payment_id}))
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        payment.refresh_from_db()
        self.assertEqual(payment.status, PaymentStatus.CONFIRMED)

    def test_edit_payment_cannot_change_status(self):
        payment = record_payment(self.customer, payment_date=self.today, amount=350000)
        url = reverse("payments-detail", kwargs={"payment_id": payment.payment_id})
        response = self.client.patch(
            url, data={"status": PaymentStatus.CONFIRMED, "notes": "Dibayar di kantor"}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        payment.refresh_from_db()
        self.assertEqual(payment.status, PaymentStatus.AWAITING_CONFIRMATION)
        self.assertEqual(payment.notes, "Dibayar di kantor")

    def test_edit_payment_validates_period_against_stored_value(self):
        payment = record_payment(self.customer, payment_date=self.today, amount=350000)
        url = reverse("payments-detail", kwargs={"payment_id": payment.payment_id})
        before_start = (payment.period_start - timedelta(days=1)).isoformat()
        response = self.client.patch(url, data={"period_end": before_start}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_unknown_payment_returns_404(self):
        response = self.client.post(reverse("payments-confirm", kwargs={"payment_id": "not-a-uuid"}))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)


class PortalApiTests(TestCase):
    def setUp(self):
        cache.clear()
        self.today = timezone.localdate()
        self.user = get_user_model().objects.create_user(
            username="budi",
            password="pass1234",
            role=UserRole.CUSTOMER,
        )
        self.customer = make_customer(
            account=self.user,
            join_date=self.today.replace(day=1),
            billing_cycle_day=1,
            status=CustomerStatus.NEW,
        )
        self.customer.save()
        self.client = APIClient()
        self.client.force_authenticate(self.user)

    def test_me_includes_billing_summary(self):
        response = self.client.get(reverse("portal-me"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["customer_id"], self.customer.customer_id)
        self.assertEqual(response.data["billing"]["due_amount"], 150000)

    def test_profile_update_limited_to_contact_fields(self):
        response = self.client.patch(
            reverse("portal-me"),
            data={
                "name": "Budi S.",
                "phone": "081311112222",
                "status": CustomerStatus.ACTIVE,
                "package_name": "100 Mbps",
                "billing_cycle_day": 20,
            },
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.name, "Budi S.")
        self.assertEqual(self.customer.phone, "081311112222")
        self.assertEqual(self.customer.status, CustomerStatus.NEW)
        self.assertEqual(self.customer.package_name, "20 Mbps")
        self.assertEqual(self.customer.billing_cycle_day, 1)

    def test_submit_payment_confirmation(self):
        data = {
            "payment_date": self.today.isoformat(),
            "amount": 150000,
            "method": "transfer",
            "signature_text": "Budi Santoso",
            "proof_url": "https://example.com/bukti.jpg",
            "status": PaymentStatus.CONFIRMED,
            "period_start": "2020-01-01",
            "period_end": "2020-01-31",
        }
        response = self.client.post(reverse("portal-payments"), data=data, format="json")
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["status"], PaymentStatus.AWAITING_CONFIRMATION)
        self.assertEqual(response.data["period_start"], self.today.replace(day=1).isoformat())

        me = self.client.get(reverse("portal-me"))
        self.assertEqual(me.data["billing"]["due_amount"], 0)

        history = self.client.get(reverse("portal-payments"))
        self.assertEqual(len(history.data), 1)

    def test_submit_with_embedded_proof_image(self):
        data = {
            "payment_date": self.today.isoformat(),
            "amount": 150000,
            "proof_image": "data:image/png;base64,iVBORw0KGgo=",
        }
        response = self.client.post(reverse("portal-payments"), data=data, format="json")
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)

    def test_invalid_proof_image_rejected(self):
        data = {
            "payment_date": self.today.isoformat(),
            "amount": 150000,
            "proof_image": "https://example.com/not-a-data-url.png",
        }
        response = self.client.post(reverse("portal-payments"), data=data, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("proof_image", response.data)

    def test_both_proof_kinds_rejected(self):
        data = {
            "payment_date": self.today.isoformat(),
            "amount": 150000,
            "proof_url": "https://example.com/bukti.jpg",
            "proof_image": "data:image/png;base64,iVBORw0KGgo=",
        }
        response = self.client.post(reverse("portal-payments"), data=data, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_account_without_customer_record(self):
        user = get_user_model().objects.create_user(username="orphan", password="pass1234")
        client = APIClient()
        client.force_authenticate(user)
        response = client.get(reverse("portal-me"))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data["detail"], "Customer not found")

    def test_admin_cannot_use_portal(self):
        admin = get_user_model().objects.create_user(username="admin-portal", password="pass1234", role=UserRole.ADMIN)
        client = APIClient()
        client.force_authenticate(admin)
        response = client.get(reverse("portal-me"))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_anonymous_rejected(self):
        response = APIClient().get(reverse("portal-me"))
        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))


class ReportApiTests(AdminApiTestCase):
    def test_dashboard_report(self):
        response = self.client.get(reverse("reports-dashboard"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["total_customers"], 1)
        self.assertIn("revenue", response.data)

    def test_dashboard_report_invalid_from_date(self):
        response = self.client.get(reverse("reports-dashboard"), data={"from": "2025-99-99"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_dashboard_csv(self):
        response = self.client.get(reverse("reports-dashboard-csv"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response["Content-Type"].startswith("text/csv"))
        self.assertTrue(response.content.decode().startswith("total_customers,"))

    def test_dashboard_csv_rows(self):
        response = self.client.get(reverse("reports-dashboard-csv"))
        rows = list(csv.reader(io.StringIO(response.content.decode())))
        self.assertEqual(rows[0][0], "total_customers")
        self.assertEqual(rows[0][-1], "revenue")
        self.assertEqual(rows[1][0], "1")
        self.assertEqual(len(rows), 2)

    def test_payments_csv_quotes_free_text(self):
        self.customer.name = "Budi, Jr."
        self.customer.save(update_fields=["name"])
        record_payment(self.customer, payment_date=self.today, amount=350000)
        response = self.client.get(reverse("reports-payments-csv"), data={"from": self.today.isoformat()})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        lines = response.content.decode().strip().splitlines()
        self.assertEqual(len(lines), 2)
        self.assertIn('"Budi, Jr."', lines[1])

    def test_payments_csv_invalid_to_date(self):
        response = self.client.get(reverse("reports-payments-csv"), data={"to": "invalid-date"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)


class ExceptionHandlerTests(SimpleTestCase):
    def test_database_error_becomes_generic_server_error(self):
        with self.assertLogs("billing.exceptions", level="ERROR"):
            response = api_exception_handler(DatabaseError("connection lost"), {"view": None})
        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertEqual(response.data["detail"], SERVER_ERROR_MESSAGE)

    def test_other_errors_are_left_to_django(self):
        self.assertIsNone(api_exception_handler(RuntimeError("boom"), {"view": None}))


class LinkCustomerAccountCommandTests(TestCase):
    def test_links_new_account(self):
        customer = make_customer()
        customer.save()
        call_command("link_customer_account", customer.customer_id, "budi-login", "--password", "rahasia123")
        customer.refresh_from_db()
        self.assertEqual(customer.account.username, "budi-login")
        self.assertEqual(customer.account.role, UserRole.CUSTOMER)
        self.assertTrue(customer.account.check_password("rahasia123"))
