import csv
import io

from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response
from rest_framework.views import APIView

from django.db.models import ProtectedError, Q
from django.http import HttpResponse
from django.utils.dateparse import parse_date

import qrcode

from .calculator import billing_summary
from .models import AuditAction, Customer, Payment
from .serializers import (
    BillingSummarySerializer,
    CustomerProfileSerializer,
    CustomerSerializer,
    PaymentRecordSerializer,
    PaymentSerializer,
    PaymentSubmissionSerializer,
)
from .services import (
    PaymentStateError,
    confirm_payment,
    dashboard_stats,
    log_audit,
    record_payment,
    reject_payment,
    submit_payment_confirmation,
)
from .throttles import PaymentSubmissionRateThrottle, QrRateThrottle, ReportsRateThrottle
from users.permissions import IsAdminUserRole, IsCustomerRole

CUSTOMER_NOT_FOUND = {"detail": "Customer not found"}


def _parse_date_range(request):
    start_param = request.query_params.get("from")
    end_param = request.query_params.get("to")
    try:
        start_date = parse_date(start_param) if start_param else None
    except ValueError:
        start_date = None
    try:
        end_date = parse_date(end_param) if end_param else None
    except ValueError:
        end_date = None
    if start_param and not start_date:
        return None, None, Response({"detail": "Invalid from date"}, status=status.HTTP_400_BAD_REQUEST)
    if end_param and not end_date:
        return None, None, Response({"detail": "Invalid to date"}, status=status.HTTP_400_BAD_REQUEST)
    return start_date, end_date, None


def _summary_data(customer):
    summary = billing_summary(customer, customer.payments.all())
    return BillingSummarySerializer(summary).data


class CustomerViewSet(viewsets.ModelViewSet):
    queryset = Customer.objects.select_related("account").all()
    serializer_class = CustomerSerializer
    permission_classes = [IsAdminUserRole]
    lookup_field = "customer_id"
    # custom ids are free text and may contain dots
    lookup_value_regex = "[^/]+"

    def get_queryset(self):
        qs = super().get_queryset()
        status_filter = self.request.query_params.get("status")
        if status_filter:
            qs = qs.filter(status=status_filter)
        return qs

    def perform_create(self, serializer):
        customer = serializer.save()
        log_audit(AuditAction.CREATE_CUSTOMER, user=self.request.user, customer=customer)

    def perform_update(self, serializer):
        customer = serializer.save()
        log_audit(
            AuditAction.UPDATE_CUSTOMER,
            user=self.request.user,
            customer=customer,
            metadata={"fields": sorted(serializer.validated_data)},
        )

    def destroy(self, request, *args, **kwargs):
        customer = self.get_object()
        try:
            customer.delete()
        except ProtectedError:
            return Response(
                {"detail": "Customer has payment history and cannot be deleted. Set the status to terminated instead."},
                status=status.HTTP_409_CONFLICT,
            )
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=False, methods=["get"], url_path="lookup")
    def lookup(self, request):
        identifier = request.query_params.get("q")
        if not identifier:
            return Response({"detail": "q is required"}, status=status.HTTP_400_BAD_REQUEST)
        # normalize common typos such as trailing slashes/spaces
        identifier = identifier.strip().strip("/")

        customer = Customer.objects.filter(customer_id__iexact=identifier).first()
        if customer is None:
            customer = (
                Customer.objects.filter(Q(phone=identifier) | Q(email__iexact=identifier))
                .order_by("-join_date")
                .first()
            )
        if customer is None:
            return Response(CUSTOMER_NOT_FOUND, status=status.HTTP_404_NOT_FOUND)

        serializer = self.get_serializer(customer)
        return Response(serializer.data)

    @action(detail=True, methods=["get"], url_path="billing")
    def billing(self, request, customer_id=None):
        customer = self.get_object()
        return Response(_summary_data(customer))

    @action(detail=True, methods=["get", "post"], url_path="payments")
    def payments(self, request, customer_id=None):
        customer = self.get_object()
        if request.method == "GET":
            serializer = PaymentSerializer(customer.payment_history, many=True)
            return Response(serializer.data)

        serializer = PaymentRecordSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        payment = record_payment(customer, recorded_by=request.user, **serializer.validated_data)
        return Response(PaymentSerializer(payment).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["get"], url_path="qr", throttle_classes=[QrRateThrottle])
    def qr(self, request, customer_id=None):
        customer = self.get_object()
        img = qrcode.make(customer.customer_id)
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return HttpResponse(buffer.getvalue(), content_type="image/png")


class PaymentViewSet(mixins.UpdateModelMixin, viewsets.ReadOnlyModelViewSet):
    queryset = Payment.objects.select_related("customer").all()
    serializer_class = PaymentSerializer
    permission_classes = [IsAdminUserRole]
    lookup_field = "payment_id"

    def get_queryset(self):
        qs = super().get_queryset()
        status_filter = self.request.query_params.get("status")
        if status_filter:
            qs = qs.filter(status=status_filter)
        customer_filter = self.request.query_params.get("customer")
        if customer_filter:
            qs = qs.filter(customer__customer_id=customer_filter)
        if self.action == "list":
            qs = qs.order_by("-payment_date", "-id")
        return qs

    def perform_update(self, serializer):
        payment = serializer.save()
        log_audit(
            AuditAction.UPDATE_PAYMENT,
            user=self.request.user,
            customer=payment.customer,
            payment=payment,
            metadata={"fields": sorted(serializer.validated_data)},
        )

    def _transition(self, request, service):
        payment = self.get_object()
        try:
            payment = service(payment, user=request.user)
        except PaymentStateError as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)
        return Response(self.get_serializer(payment).data)

    @action(detail=True, methods=["post"], url_path="confirm")
    def confirm(self, request, payment_id=None):
        return self._transition(request, confirm_payment)

    @action(detail=True, methods=["post"], url_path="reject")
    def reject(self, request, payment_id=None):
        return self._transition(request, reject_payment)


class PortalCustomerMixin:
    permission_classes = [IsCustomerRole]

    def get_customer(self, request):
        return Customer.objects.filter(account=request.user).first()


class PortalProfileView(PortalCustomerMixin, APIView):
    def get(self, request):
        customer = self.get_customer(request)
        if customer is None:
            return Response(CUSTOMER_NOT_FOUND, status=status.HTTP_404_NOT_FOUND)
        data = CustomerProfileSerializer(customer).data
        data["billing"] = _summary_data(customer)
        return Response(data)

    def patch(self, request):
        customer = self.get_customer(request)
        if customer is None:
            return Response(CUSTOMER_NOT_FOUND, status=status.HTTP_404_NOT_FOUND)
        serializer = CustomerProfileSerializer(customer, data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        serializer.save()
        log_audit(
            AuditAction.UPDATE_PROFILE,
            user=request.user,
            customer=customer,
            metadata={"fields": sorted(serializer.validated_data)},
        )
        return Response(serializer.data)


class PortalPaymentsView(PortalCustomerMixin, APIView):
    throttle_classes = [PaymentSubmissionRateThrottle]

    def get(self, request):
        customer = self.get_customer(request)
        if customer is None:
            return Response(CUSTOMER_NOT_FOUND, status=status.HTTP_404_NOT_FOUND)
        serializer = PaymentSerializer(customer.payment_history, many=True)
        return Response(serializer.data)

    def post(self, request):
        customer = self.get_customer(request)
        if customer is None:
            return Response(CUSTOMER_NOT_FOUND, status=status.HTTP_404_NOT_FOUND)
        serializer = PaymentSubmissionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        payment = submit_payment_confirmation(
            customer,
            submitted_by=request.user,
            **serializer.validated_data,
        )
        return Response(PaymentSerializer(payment).data, status=status.HTTP_201_CREATED)


class DashboardReportView(APIView):
    permission_classes = [IsAdminUserRole]
    throttle_classes = [ReportsRateThrottle]

    def get(self, request):
        start_date, end_date, error_response = _parse_date_range(request)
        if error_response:
            return error_response

        data = dashboard_stats(start_date=start_date, end_date=end_date)
        return Response(data)


class DashboardReportCsvView(APIView):
    permission_classes = [IsAdminUserRole]
    throttle_classes = [ReportsRateThrottle]

    def get(self, request):
        start_date, end_date, error_response = _parse_date_range(request)
        if error_response:
            return error_response

        data = dashboard_stats(start_date=start_date, end_date=end_date)
        columns = ["total_customers", "active_customers", "suspended_customers", "awaiting_payments", "revenue"]
        response = HttpResponse(content_type="text/csv")
        response["Content-Disposition"] = "attachment; filename=\"dashboard_report.csv\""
        writer = csv.writer(response)
        writer.writerow(columns)
        writer.writerow([data[column] for column in columns])
        return response


class PaymentReportCsvView(APIView):
    permission_classes = [IsAdminUserRole]
    throttle_classes = [ReportsRateThrottle]

    def get(self, request):
        start_date, end_date, error_response = _parse_date_range(request)
        if error_response:
            return error_response

        payments = Payment.objects.select_related("customer").order_by("payment_date", "id")
        if start_date:
            payments = payments.filter(payment_date__gte=start_date)
        if end_date:
            payments = payments.filter(payment_date__lte=end_date)
        status_filter = request.query_params.get("status")
        if status_filter:
            payments = payments.filter(status=status_filter)

        response = HttpResponse(content_type="text/csv")
        response["Content-Disposition"] = "attachment; filename=\"payment_report.csv\""
        # customer names and notes are free text, so quote through the csv module
        writer = csv.writer(response)
        writer.writerow(
            [
                "payment_id",
                "customer_id",
                "customer_name",
                "payment_date",
                "amount",
                "period_start",
                "period_end",
                "method",
                "status",
            ]
        )
        for payment in payments:
            writer.writerow(
                [
                    payment.payment_id,
                    payment.customer.customer_id,
                    payment.customer.name,
                    payment.payment_date.isoformat(),
                    payment.amount,
                    payment.period_start.isoformat(),
                    payment.period_end.isoformat(),
                    payment.method,
                    payment.status,
                ]
            )
        return response
