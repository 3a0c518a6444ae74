from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from billing.models import Customer
from users.models import User, UserRole


class Command(BaseCommand):
    help = "Create (or reuse) a customer-role login and link it to a customer record"

    def add_arguments(self, parser):
        parser.add_argument("customer_id")
        parser.add_argument("username")
        parser.add_argument("--password", help="Password for a newly created account")

    @transaction.atomic
    def handle(self, *args, **options):
        try:
            customer = Customer.objects.select_for_update().get(customer_id=options["customer_id"])
        except Customer.DoesNotExist:
            raise CommandError(f"Customer {options['customer_id']} not found")

        user, created = User.objects.get_or_create(
            username=options["username"],
            defaults={"role": UserRole.CUSTOMER, "email": customer.email or ""},
        )
        if user.role != UserRole.CUSTOMER:
            raise CommandError(f"User {user.username} is not a customer account")
        if Customer.objects.filter(account=user).exclude(pk=customer.pk).exists():
            raise CommandError(f"User {user.username} is already linked to another customer")
        if created:
            if options["password"]:
                user.set_password(options["password"])
            else:
                user.set_unusable_password()
            user.save()

        customer.account = user
        customer.save(update_fields=["account", "updated_at"])
        self.stdout.write(
            self.style.SUCCESS(f"Linked {customer.customer_id} to account {user.username}")
        )
