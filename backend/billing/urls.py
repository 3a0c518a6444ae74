from django.urls import path
from rest_framework.routers import DefaultRouter

from .views import (
    CustomerViewSet,
    DashboardReportCsvView,
    DashboardReportView,
    PaymentReportCsvView,
    PaymentViewSet,
    PortalPaymentsView,
    PortalProfileView,
)

router = DefaultRouter()
router.register(r"customers", CustomerViewSet, basename="customers")
router.register(r"payments", PaymentViewSet, basename="payments")

urlpatterns = [
    *router.urls,
    path("portal/me/", PortalProfileView.as_view(), name="portal-me"),
    path("portal/payments/", PortalPaymentsView.as_view(), name="portal-payments"),
    path("reports/dashboard/", DashboardReportView.as_view(), name="reports-dashboard"),
    path("reports/dashboard/csv/", DashboardReportCsvView.as_view(), name="reports-dashboard-csv"),
    path("reports/payments/csv/", PaymentReportCsvView.as_view(), name="reports-payments-csv"),
]
