import base64
import binascii

from django.conf import settings
from rest_framework import serializers

from users.models import User, UserRole

from .models import Customer, Payment, PaymentStatus


class CustomerSerializer(serializers.ModelSerializer):
    account = serializers.PrimaryKeyRelatedField(
        queryset=User.objects.filter(role=UserRole.CUSTOMER),
        required=False,
        allow_null=True,
    )

    class Meta:
        model = Customer
        fields = [
            "id",
            "customer_id",
            "account",
            "name",
            "address",
            "phone",
            "email",
            "package_name",
            "join_date",
            "installation_date",
            "billing_cycle_day",
            "status",
            "notes",
            "onu_mac_address",
            "ip_address",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]
        extra_kwargs = {
            "customer_id": {"min_length": 3},
            "name": {"min_length": 3},
            "address": {"min_length": 5},
            "phone": {"min_length": 10},
        }

    def validate_customer_id(self, value):
        # the custom id is the customer's login-facing key and stays fixed once issued
        if self.instance is not None and value != self.instance.customer_id:
            raise serializers.ValidationError("Customer ID cannot be changed.")
        return value

    def validate_account(self, value):
        if value is None:
            return value
        linked = Customer.objects.filter(account=value)
        if self.instance is not None:
            linked = linked.exclude(pk=self.instance.pk)
        if linked.exists():
            raise serializers.ValidationError("This account is already linked to another customer.")
        return value


class CustomerProfileSerializer(serializers.ModelSerializer):
    """What a customer may see and edit of their own record."""

    class Meta:
        model = Customer
        fields = [
            "customer_id",
            "name",
            "address",
            "phone",
            "email",
            "package_name",
            "join_date",
            "installation_date",
            "billing_cycle_day",
            "status",
        ]
        read_only_fields = [
            "customer_id",
            "package_name",
            "join_date",
            "installation_date",
            "billing_cycle_day",
            "status",
        ]
        extra_kwargs = {
            "name": {"min_length": 3},
            "address": {"min_length": 5},
            "phone": {"min_length": 10},
        }


class PaymentSerializer(serializers.ModelSerializer):
    customer_id = serializers.CharField(source="customer.customer_id", read_only=True)
    customer_name = serializers.CharField(source="customer.name", read_only=True)

    class Meta:
        model = Payment
        fields = [
            "payment_id",
            "customer_id",
            "customer_name",
            "payment_date",
            "amount",
            "period_start",
            "period_end",
            "proof_url",
            "proof_image",
            "signature_text",
            "method",
            "notes",
            "status",
            "created_at",
        ]
        read_only_fields = ["payment_id", "status", "created_at"]

    def validate_proof_image(self, value):
        if not value:
            return value
        header, sep, payload = value.partition(",")
        if not sep or not header.startswith("data:image/") or not header.endswith(";base64"):
            raise serializers.ValidationError("Proof image must be a base64 image data URL.")
        try:
            raw = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            raise serializers.ValidationError("Proof image is not valid base64.")
        if len(raw) > settings.ELANET_PROOF_IMAGE_MAX_BYTES:
            raise serializers.ValidationError("Proof image is too large.")
        return value

    def validate(self, attrs):
        start = attrs.get("period_start", getattr(self.instance, "period_start", None))
        end = attrs.get("period_end", getattr(self.instance, "period_end", None))
        if start and end and end < start:
            raise serializers.ValidationError(
                {"period_end": "Period end cannot be before period start."}
            )

        proof_url = attrs.get("proof_url", getattr(self.instance, "proof_url", ""))
        proof_image = attrs.get("proof_image", getattr(self.instance, "proof_image", ""))
        if proof_url and proof_image:
            raise serializers.ValidationError(
                {"proof_image": "Provide either a proof URL or a proof image, not both."}
            )
        return attrs


class PaymentRecordSerializer(PaymentSerializer):
    """Admin-recorded payment: any status, period optional (derived when omitted)."""

    status = serializers.ChoiceField(
        choices=PaymentStatus.choices,
        default=PaymentStatus.AWAITING_CONFIRMATION,
    )

    class Meta(PaymentSerializer.Meta):
        read_only_fields = ["payment_id", "created_at"]
        extra_kwargs = {
            "period_start": {"required": False},
            "period_end": {"required": False},
        }

    def validate(self, attrs):
        if ("period_start" in attrs) != ("period_end" in attrs):
            raise serializers.ValidationError(
                "Provide both period_start and period_end, or neither."
            )
        return super().validate(attrs)


class PaymentSubmissionSerializer(PaymentSerializer):
    """Customer payment confirmation; period and status are set server-side."""

    class Meta(PaymentSerializer.Meta):
        read_only_fields = ["payment_id", "period_start", "period_end", "status", "created_at"]


class BillingPeriodSerializer(serializers.Serializer):
    start = serializers.DateField()
    end = serializers.DateField()


class BillingSummarySerializer(serializers.Serializer):
    due_amount = serializers.IntegerField()
    package_price = serializers.IntegerField()
    next_due_date = serializers.DateField()
    next_period = BillingPeriodSerializer()
