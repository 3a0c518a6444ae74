from django.contrib import admin

from .models import AuditLog, Customer, Payment


class PaymentInline(admin.TabularInline):
    model = Payment
    fk_name = "customer"
    extra = 0
    can_delete = False
    fields = ("payment_date", "amount", "period_start", "period_end", "method", "status")
    readonly_fields = ("status",)
    ordering = ("id",)


@admin.register(Customer)
class CustomerAdmin(admin.ModelAdmin):
    list_display = ("customer_id", "name", "phone", "package_name", "billing_cycle_day", "status")
    search_fields = ("customer_id", "name", "phone", "email")
    list_filter = ("status", "package_name")
    inlines = [PaymentInline]


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ("payment_id", "customer", "payment_date", "amount", "period_start", "period_end", "status")
    search_fields = ("payment_id", "customer__customer_id", "customer__name")
    list_filter = ("status", "method", "payment_date")
    readonly_fields = ("payment_id", "status")

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    list_display = ("action", "user", "customer", "payment", "created_at")
    list_filter = ("action", "created_at")
    search_fields = ("customer__customer_id", "payment__payment_id", "user__username")
